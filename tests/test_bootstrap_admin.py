import importlib.util
from pathlib import Path

import pytest

from helpdesk.service.runtime import get_runtime

SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "bootstrap_admin.py"
PASSWORD = "Admin-Password-2024"


@pytest.fixture(scope="module")
def script():
    spec = importlib.util.spec_from_file_location("bootstrap_admin", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


@pytest.mark.parametrize(
    "password,ok",
    [
        ("short1!A", False),
        ("alllowercaseletters", False),
        ("lowercase-and-digits-123", True),
        ("Mixed-Case-Password", True),
    ],
)
def test_validate_password(script, password, ok):
    assert script.validate_password(password) is ok


async def test_creates_admin_and_issues_token(script):
    result = await script.bootstrap_admin("root@helpdesk.example", PASSWORD, display_name="Root")

    assert result["status"] == "created"
    runtime = get_runtime()
    user = runtime.store.get_user(result["user_id"])
    assert user.role == "admin"
    claims = runtime.codec.decode(result["access_token"])
    assert claims.subject == user.id
    assert claims.role == "admin"


async def test_promotes_existing_user(script):
    user = get_runtime().auth.create_user("tom@helpdesk.example", PASSWORD, role="technician")

    result = await script.bootstrap_admin("tom@helpdesk.example", PASSWORD)

    assert result == {"user_id": user.id, "email": "tom@helpdesk.example", "status": "promoted"}
    assert get_runtime().store.get_user(user.id).role == "admin"


async def test_existing_admin_untouched(script):
    get_runtime().auth.create_user("root@helpdesk.example", PASSWORD, role="admin")

    result = await script.bootstrap_admin("root@helpdesk.example", PASSWORD)
    assert result["status"] == "already_admin"


async def test_dry_run_creates_nothing(script):
    result = await script.bootstrap_admin("root@helpdesk.example", PASSWORD, dry_run=True)

    assert result["status"] == "dry_run"
    assert get_runtime().store.get_user_by_email("root@helpdesk.example") is None


def test_main_rejects_weak_password(script, capsys):
    assert script.main(["--email", "root@helpdesk.example", "--password", "weak"]) == 2
    assert "password" in capsys.readouterr().err


def test_main_dry_run(script, capsys):
    assert script.main(["--email", "root@helpdesk.example", "--password", PASSWORD, "--dry-run"]) == 0
    assert capsys.readouterr().out.startswith("dry_run: root@helpdesk.example")
