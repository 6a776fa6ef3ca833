"""Shared test fixtures for ForgeKit tests."""
import json
import time

import jwt
import pytest

from forgekit.core.config import ForgeConfig


def make_token(exp_offset=3600, **claims):
    """Create an HS256 JWT; signature is never verified by the CLI."""
    payload = {"sub": "user-123", "email": "dev@example.com", "iat": int(time.time())}
    if exp_offset is not None:
        payload["exp"] = int(time.time()) + exp_offset
    payload.update(claims)
    payload = {key: value for key, value in payload.items() if value is not None}
    return jwt.encode(payload, "test-secret", algorithm="HS256")


@pytest.fixture
def token():
    return make_token()


@pytest.fixture
def config(tmp_path):
    """Config isolated to a temp home with fast retries."""
    return ForgeConfig(
        home_dir=tmp_path / "home",
        api_base_url="https://api.forgekit.ai",
        callback_host="127.0.0.1",
        callback_port=0,
        port_attempts=1,
        login_timeout=5.0,
        build_retry_delay=0.0,
        upload_retry_delay=0.0,
    )


def write_json(path, data):
    path.write_text(json.dumps(data, indent=2))


@pytest.fixture
def project_dir(tmp_path):
    """Minimal react-vite project with build output in dist/."""
    root = tmp_path / "project"
    root.mkdir()
    write_json(root / "forgekit.json", {
        "slug": "my-app",
        "projectName": "My App",
        "stack": {"frontend": "react-vite", "backend": None, "ui": "tailwind"},
        "build": {"buildDir": "dist"},
    })
    write_json(root / "package.json", {"name": "my-app", "scripts": {"build": "vite build"}})
    (root / "vite.config.ts").write_text("export default {}\n")
    (root / "src").mkdir()
    (root / "src" / "main.tsx").write_text("console.log(import.meta.env.VITE_API_URL)\n")
    dist = root / "dist"
    dist.mkdir()
    (dist / "index.html").write_text("<html></html>")
    (dist / "assets").mkdir()
    (dist / "assets" / "app.js").write_text("console.log('hi')")
    return root


FORGEKIT_VARS = [
    "FORGEKIT_TOKEN",
    "FORGEKIT_LOGIN_URL",
    "FORGEKIT_CALLBACK_HOST",
    "FORGEKIT_CALLBACK_PORT",
    "FORGEKIT_LOGIN_TIMEOUT",
    "FORGEKIT_API_BASE_URL",
    "FORGEKIT_REQUEST_TIMEOUT",
    "FORGEKIT_UPLOAD_TIMEOUT",
]


@pytest.fixture
def cli_env(tmp_path, monkeypatch):
    """Isolate credentials and logs; widen the console so lines don't wrap."""
    for name in FORGEKIT_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("FORGEKIT_HOME", str(tmp_path / "home"))
    monkeypatch.setenv("COLUMNS", "200")
    monkeypatch.setattr("forgekit.core.logger.LOG_FILE", tmp_path / "logs" / "forge.log")


@pytest.fixture
def logged_in(monkeypatch):
    token = make_token(email="dev@example.com")
    monkeypatch.setenv("FORGEKIT_TOKEN", token)
    return token
