import anyio
import pytest
import sse_starlette
from packaging import version

from tests.test_helpers import EchoDispatcher


@pytest.fixture
def anyio_backend():
    return "asyncio"


SSE_STARLETTE_VERSION = version.parse(sse_starlette.__version__)
NEEDS_RESET = SSE_STARLETTE_VERSION < version.parse("3.0.0")


@pytest.fixture(autouse=True)
def reset_sse_app_status():
    """Reset sse-starlette's global AppStatus singleton before each test.

    AppStatus.should_exit_event is a global asyncio.Event that gets bound to
    an event loop. Versions 3.0+ use context-local events and need no reset.
    """
    if not NEEDS_RESET:
        yield
        return

    # lazy import to avoid import errors
    from sse_starlette.sse import AppStatus

    AppStatus.should_exit_event = anyio.Event()  # type: ignore[attr-defined]

    yield

    AppStatus.should_exit_event = anyio.Event()  # type: ignore[attr-defined]


@pytest.fixture
def echo_dispatcher() -> EchoDispatcher:
    return EchoDispatcher()
