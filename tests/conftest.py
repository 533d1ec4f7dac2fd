"""Pytest configuration shared across the suite."""

import pytest

try:  # pragma: no cover - import guard for direct execution
    from . import _bootstrap  # noqa: F401
except ImportError:  # pragma: no cover
    import _bootstrap  # noqa: F401


@pytest.fixture
def anyio_backend() -> str:
    """Force AnyIO-powered tests to run against asyncio backend only."""
    return "asyncio"


@pytest.fixture
def broker_stack(tmp_path):
    """Wire the FastAPI app to a fresh store and a fake Zoom upstream."""
    try:
        from ._fakes import build_stack
    except ImportError:  # pragma: no cover
        from _fakes import build_stack  # type: ignore

    from broker import dependencies
    from broker.main import app

    stack = build_stack(tmp_path / "http.db")
    app.dependency_overrides.update(
        {
            dependencies.get_connect_flow_service: lambda: stack.flow,
            dependencies.get_credential_vault: lambda: stack.vault,
            dependencies.get_platform_registry: lambda: stack.registry,
            dependencies.get_audit_trail: lambda: stack.audit,
            dependencies.get_authorization_server: lambda: stack.server,
            dependencies.get_signing_key_manager: lambda: stack.keys,
        }
    )
    stack.app = app
    yield stack
    app.dependency_overrides.clear()
