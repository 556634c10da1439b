"""Pytest fixtures shared across the test suite."""

import os
import tempfile

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("TRACKING_MODE", "inline")
os.environ.setdefault("IMAGE_STORAGE_ROOT", os.path.join(tempfile.gettempdir(), "layout-catalog-images"))

import pytest

import app as catalog


def build_app(tmp_path, **overrides):
    config = {
        "TESTING": True,
        "SECRET_KEY": "test-secret",
        "SQLALCHEMY_DATABASE_URI": f"sqlite:///{tmp_path / 'catalog.db'}",
        "IMAGE_STORAGE_ROOT": str(tmp_path / "images"),
        "TRACKING_MODE": "inline",
        "SESSION_COOKIE_SECURE": False,
    }
    config.update(overrides)
    return catalog.create_app(config)


@pytest.fixture
def app(tmp_path):
    flask_app = build_app(tmp_path)
    yield flask_app
    with flask_app.app_context():
        catalog.db.session.remove()
        catalog.db.engine.dispose()


@pytest.fixture
def client(app):
    return app.test_client()
