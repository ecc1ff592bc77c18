"""Policy tests to keep request code aligned with transaction conventions."""

from __future__ import annotations

import ast
from pathlib import Path


SERVICE_MODULES_WITH_STATE_CHANGES = (
    "secret_service.py",
    "session_service.py",
    "authn_service.py",
    "user_service.py",
    "client_service.py",
    "totp_service.py",
)


def test_request_bounded_code_has_no_explicit_commit_or_rollback() -> None:
    """Request-bounded code should not call commit()/rollback() directly."""
    repo_root = Path(__file__).resolve().parents[2]
    roots = (repo_root / "authgate" / "routes", repo_root / "authgate" / "services")

    violations: list[str] = []
    for root in roots:
        for path in root.rglob("*.py"):
            tree = ast.parse(path.read_text(encoding="utf-8"), filename=str(path))
            for node in ast.walk(tree):
                if not isinstance(node, ast.Call):
                    continue
                func = node.func
                if not isinstance(func, ast.Attribute):
                    continue
                if func.attr not in {"commit", "rollback"}:
                    continue
                violations.append(f"{path.relative_to(repo_root)}:{node.lineno}")

    assert not violations, (
        "Explicit commit()/rollback() calls found in request-bounded code:\n"
        + "\n".join(sorted(violations))
    )


def test_state_changing_services_open_their_own_transactions() -> None:
    """Services that write must do so inside `async with db.begin()` blocks."""
    services = Path(__file__).resolve().parents[2] / "authgate" / "services"
    missing = []
    for name in SERVICE_MODULES_WITH_STATE_CHANGES:
        source = (services / name).read_text(encoding="utf-8")
        if "async with db.begin():" not in source:
            missing.append(name)
    assert not missing, f"No transaction blocks found in: {', '.join(missing)}"
