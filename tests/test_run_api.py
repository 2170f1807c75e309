import importlib.util
from pathlib import Path

import uvicorn

SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "run_api.py"


def _load_script():
    spec = importlib.util.spec_from_file_location("run_api", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def test_serves_app_with_env_bind(monkeypatch):
    calls = []
    monkeypatch.setattr(uvicorn, "run", lambda app, **kwargs: calls.append((app, kwargs)))
    monkeypatch.setenv("API_HOST", "127.0.0.1")
    monkeypatch.setenv("API_PORT", "9123")

    _load_script().main()

    app, kwargs = calls[0]
    assert app == "uniupdates.app:app"
    assert kwargs["host"] == "127.0.0.1"
    assert kwargs["port"] == 9123
