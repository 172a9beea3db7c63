"""
Build handlers registry and implementations.

A build handler turns a leased job into an artifact. Handlers must be
idempotent: after a worker crash the same job is built again by whoever
reclaims the lease, and the artifact path is keyed by job id so a rebuild
overwrites rather than accumulates.
"""

import asyncio
import logging
import re
import time
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone

from buildqueue.constants import APK_MIME_TYPE, DEFAULT_PACKAGE_PREFIX, IPA_MIME_TYPE
from buildqueue.types.job import BuildContext, BuildResult

logger = logging.getLogger(__name__)

# Type alias for build handler functions
BuildHandler = Callable[[BuildContext], Awaitable[BuildResult]]

# Handler registry
_handlers: dict[str, BuildHandler] = {}


class BuildError(Exception):
    """
    A build that ran and failed.

    Carries the logs collected so far so they can be shown on the app.
    """

    def __init__(self, message: str, logs: str | None = None):
        super().__init__(message)
        self.logs = logs


def register_handler(name: str) -> Callable[[BuildHandler], BuildHandler]:
    """
    Decorator to register a build handler.

    Args:
        name: The name the handler is selected by (BUILD_HANDLER).

    Returns:
        Decorator function.

    Example:
        @register_handler("gradle")
        async def handle_gradle(context: BuildContext) -> BuildResult:
            ...
    """
    def decorator(handler: BuildHandler) -> BuildHandler:
        _handlers[name] = handler
        logger.debug("Registered build handler", extra={"handler": name})
        return handler
    return decorator


def get_handler(name: str) -> BuildHandler | None:
    """
    Get a build handler by name.

    Args:
        name: The handler name.

    Returns:
        The handler function or None if not found.
    """
    return _handlers.get(name)


def list_handlers() -> list[str]:
    """List all registered handler names."""
    return list(_handlers.keys())


def safe_package_name(app_id: object, prefix: str = DEFAULT_PACKAGE_PREFIX) -> str:
    """
    Derive a valid Java package name from an app id.

    Java package segments cannot start with a digit, so such suffixes are
    prefixed with "a".
    """
    suffix = re.sub(r"[^a-z0-9]", "", str(app_id).lower())[:8] or "app"
    if suffix[0].isdigit():
        suffix = "a" + suffix[:7]
    return f"{prefix}.{suffix}"


def _stamp() -> str:
    return datetime.now(timezone.utc).isoformat()


# ============================================================================
# Built-in build handlers
# ============================================================================


async def _write_mock_artifact(
    context: BuildContext, suffix: str, mime: str, label: str
) -> BuildResult:
    started = time.monotonic()
    logs = f"[{_stamp()}] Mock {label} build for {context.app_name}\n"
    logs += f"[{_stamp()}] Package: {context.package_name}, version {context.version_code}\n"

    destination = context.output_dir / f"{context.job_id}{suffix}"
    relative = destination.relative_to(context.artifacts_dir).as_posix()
    content = (
        f"BUILDQUEUE-MOCK-{suffix.lstrip('.').upper()}\n"
        f"appId={context.app_id}\n"
        f"jobId={context.job_id}\n"
        f"createdAt={_stamp()}\n"
    ).encode()

    def write() -> int:
        destination.parent.mkdir(parents=True, exist_ok=True)
        destination.write_bytes(content)
        return destination.stat().st_size

    size = await asyncio.to_thread(write)
    logs += f"[{_stamp()}] Wrote {relative} ({size} bytes)\n"

    logger.info(
        "Mock build finished",
        extra={"job_id": str(context.job_id), "artifact": relative},
    )

    return BuildResult(
        artifact_path=relative,
        artifact_size=size,
        artifact_mime=mime,
        logs=logs,
        duration_ms=(time.monotonic() - started) * 1000,
    )


@register_handler("mock")
async def handle_mock_build(context: BuildContext) -> BuildResult:
    """
    Mock Android build.

    Writes a placeholder artifact so the download and app-sync path can be
    exercised without a native toolchain.
    """
    return await _write_mock_artifact(context, ".apk", APK_MIME_TYPE, "Android")


@register_handler("mock_ios")
async def handle_mock_ios_build(context: BuildContext) -> BuildResult:
    """Mock iOS build writing a placeholder .ipa."""
    return await _write_mock_artifact(context, ".ipa", IPA_MIME_TYPE, "iOS")


@register_handler("flaky")
async def handle_flaky_build(context: BuildContext) -> BuildResult:
    """Mock build that fails on the first attempt only - for testing retries."""
    if context.attempt <= 1:
        raise BuildError(
            "Mock build forced failure (first attempt)",
            logs=f"[{_stamp()}] Forced failure on attempt {context.attempt}\n",
        )
    return await handle_mock_build(context)


@register_handler("failing")
async def handle_failing_build(context: BuildContext) -> BuildResult:
    """
    Handler that always fails - for testing the retry cap.
    """
    logger.info(
        "Failing build executing (will fail)",
        extra={"job_id": str(context.job_id), "attempt": context.attempt},
    )
    raise BuildError(
        f"Intentional failure on attempt {context.attempt}",
        logs=f"[{_stamp()}] Intentional failure\n",
    )
