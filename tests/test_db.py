from roadnet.config import settings
from roadnet.storage import db


def _capture(monkeypatch):
    calls = []

    def fake_create_engine(url, **kwargs):
        calls.append((url, kwargs))
        return object()

    monkeypatch.setattr(db, "create_engine", fake_create_engine)
    return calls


def test_postgres_engine_bounds_connect_time(monkeypatch):
    calls = _capture(monkeypatch)
    monkeypatch.setattr(settings, "db_connect_timeout_s", 3)

    db.make_engine("postgresql://u:p@10.255.255.1/roads")

    url, kwargs = calls[0]
    assert url.startswith("postgresql+psycopg://")
    assert kwargs["connect_args"] == {"connect_timeout": 3}
    assert kwargs["pool_pre_ping"] is True


def test_postgres_scheme_alias_is_normalized(monkeypatch):
    calls = _capture(monkeypatch)
    db.make_engine("postgres://u:p@localhost/roads")
    assert calls[0][0] == "postgresql+psycopg://u:p@localhost/roads"


def test_sqlite_engine_has_no_connect_timeout(monkeypatch):
    calls = _capture(monkeypatch)
    db.make_engine("sqlite:///ratings.sqlite")
    _url, kwargs = calls[0]
    assert kwargs["connect_args"] == {"check_same_thread": False}
