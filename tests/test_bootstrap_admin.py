"""Tests for the first-administrator bootstrap script."""

import importlib.util
from pathlib import Path

import pytest

from adminguard.service.errors import WeakSecret
from adminguard.service.runtime import get_runtime

from tests.conftest import STRONG_SECRET

_SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "bootstrap_admin.py"


@pytest.fixture(scope="module")
def bootstrap():
    spec = importlib.util.spec_from_file_location("bootstrap_admin", _SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module.bootstrap_admin


class TestBootstrapAdmin:
    def test_creates_first_principal(self, bootstrap):
        result = bootstrap("root", "root@example.com", STRONG_SECRET, "super_admin")
        assert result["status"] == "created"
        principal = get_runtime().store.get_principal(result["principal_id"])
        assert principal.role == "super_admin"

    def test_refuses_when_principals_exist(self, bootstrap):
        bootstrap("root", "root@example.com", STRONG_SECRET, "super_admin")
        result = bootstrap("again", "again@example.com", STRONG_SECRET, "admin")
        assert result["status"] == "exists"
        assert get_runtime().store.count_principals() == 1

    def test_dry_run_makes_no_changes(self, bootstrap, capsys):
        result = bootstrap("root", "root@example.com", "weak", "super_admin", dry_run=True)
        assert result["status"] == "dry_run"
        assert get_runtime().store.count_principals() == 0
        assert "Password must be at least 12 characters long" in capsys.readouterr().out

    def test_weak_secret_raises(self, bootstrap):
        with pytest.raises(WeakSecret):
            bootstrap("root", "root@example.com", "weak", "super_admin")
