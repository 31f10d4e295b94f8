import importlib.util
from pathlib import Path

import pytest

from socialgate.service.runtime import get_runtime

SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "bootstrap_user.py"


@pytest.fixture
def bootstrap():
    spec = importlib.util.spec_from_file_location("bootstrap_user", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module.bootstrap_user


def test_seeds_profile_and_credential(bootstrap):
    result = bootstrap("user", "user", "USA", "Franklin,Aretha")
    assert result["profile"] == "created"
    assert result["credential"] == "created"

    runtime = get_runtime()
    session = runtime.sessions.sign_on("user", "user")
    assert session.partition == "USA"


def test_second_run_reports_existing(bootstrap):
    bootstrap("user", "user", "USA", "Franklin,Aretha")
    result = bootstrap("user", "user", "USA", "Franklin,Aretha")
    assert result == {
        "user_id": "user",
        "partition": "USA",
        "row": "Franklin,Aretha",
        "profile": "exists",
        "credential": "exists",
    }


def test_profile_only_and_dry_run(bootstrap):
    result = bootstrap(None, None, "Canada", "Quin,Tegan", profile_only=True, dry_run=True)
    assert result["profile"] == "dry_run"
    assert "credential" not in result
    table = get_runtime().settings.profile_table
    assert get_runtime().store.get_entity(table, "Canada", "Quin,Tegan") is None
