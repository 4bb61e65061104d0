import pytest

from src.turnkit import server


def test_main_passes_parsed_args(monkeypatch: pytest.MonkeyPatch):
    seen: dict = {}

    def fake_run_server(*, host: str, port: int, log_level: str) -> int:
        seen.update({"host": host, "port": port, "log_level": log_level})
        return 0

    monkeypatch.setattr(server, "run_server", fake_run_server)

    assert server.main(["--host", "0.0.0.0", "--port", "9100", "--log-level", "debug"]) == 0
    assert seen == {"host": "0.0.0.0", "port": 9100, "log_level": "debug"}


def test_main_defaults(monkeypatch: pytest.MonkeyPatch):
    seen: dict = {}
    monkeypatch.setattr(server, "run_server", lambda **kwargs: seen.update(kwargs) or 0)

    assert server.main([]) == 0
    assert seen == {"host": "127.0.0.1", "port": 8000, "log_level": "info"}


def test_main_rejects_unknown_log_level():
    with pytest.raises(SystemExit):
        server.main(["--log-level", "verbose"])


def test_run_server_invokes_uvicorn(monkeypatch: pytest.MonkeyPatch):
    import uvicorn

    calls: list = []
    monkeypatch.setattr(uvicorn, "run", lambda *args, **kwargs: calls.append((args, kwargs)))

    assert server.run_server(host="127.0.0.1", port=8123) == 0
    assert calls == [(("app.main:app",), {"host": "127.0.0.1", "port": 8123, "log_level": "info", "reload": False})]
