"""End-to-end run pipeline.

    validate payload → preflight → ImageCatalog.ensure_built()
        → Workspace.create() → populate() → VmRunner.run() → ResultReporter.report()
        → Workspace.teardown()   (always)

Usage:
    result = await run_payload(GuestPayload(executable=Path("./hello")))

    # From a synchronous entry point, with SIGINT/SIGTERM routed through teardown:
    result = asyncio.run(run_interruptible(run_payload(payload, settings)))
"""

from __future__ import annotations

import asyncio
import signal
from typing import TYPE_CHECKING, TypeVar

from guest_exec._logging import get_logger
from guest_exec.exceptions import GuestExecError, RunInterrupted
from guest_exec.image_catalog import ImageCatalog
from guest_exec.mount_controller import MountController
from guest_exec.payload import PayloadInjector
from guest_exec.reporter import ResultReporter
from guest_exec.settings import Settings
from guest_exec.system_probes import preflight
from guest_exec.vm_runner import VmRunner
from guest_exec.workspace import Workspace

if TYPE_CHECKING:
    from collections.abc import Coroutine
    from typing import Any

    from guest_exec.models import GuestPayload, RunResult

logger = get_logger(__name__)

T = TypeVar("T")

_INTERRUPT_SIGNALS = (signal.SIGINT, signal.SIGTERM)


async def run_payload(payload: GuestPayload, settings: Settings | None = None) -> RunResult:
    """Run ``payload`` in a fresh guest and return its status and output.

    Host capabilities are checked before any image work. The per-run
    workspace is torn down on every exit path; the cached images are kept.
    A teardown failure after the guest finished carries the finished
    RunResult in the error's ``context["run_result"]``.

    Raises:
        PayloadError: Payload executable or folder is missing
        DependencyError: A required tool or KVM (when required) is missing
        BuildError: The bootloader or base image could not be built
        MountFailure, UnmountFailure: Image mounting failed
        EmulatorError: The emulator could not be started
    """
    settings = settings or Settings()
    mount_controller = MountController(settings)
    catalog = ImageCatalog(settings, mount_controller)
    injector = PayloadInjector()

    await injector.validate(payload)
    needs_build = await catalog.needs_build()
    accel = await preflight(
        settings,
        needs_build=needs_build,
        seeded=needs_build and await catalog.seed_archive() is not None,
    )
    base_image = await catalog.ensure_built()

    result: RunResult | None = None
    try:
        async with await Workspace.create(settings, mount_controller) as workspace:
            logger.info("Starting run", extra={"run_id": workspace.run_id, "executable": str(payload.executable)})
            await workspace.populate(base_image, payload, injector)
            raw_status = await VmRunner(settings).run(workspace.paths, accel)
            result = await ResultReporter(settings.exit_convention).report(workspace.paths, raw_status)
            return result
    except GuestExecError as e:
        if result is not None:
            # Teardown failed after the guest finished; keep its outcome reachable
            logger.error(
                "Run finished but workspace teardown failed",
                extra={"exit_status": result.exit_status, "error": e.message},
            )
            e.context["run_result"] = result
        raise


async def run_interruptible(coro: Coroutine[Any, Any, T]) -> T:
    """Await ``coro`` as a task that SIGINT/SIGTERM cancel instead of killing the process.

    Cancellation unwinds through the workspace context manager, so teardown
    completes before this returns.

    Raises:
        RunInterrupted: A signal stopped the run (after cleanup)
    """
    loop = asyncio.get_running_loop()
    task = asyncio.ensure_future(coro)
    received: list[int] = []

    def on_signal(signum: int) -> None:
        if received:
            # Already unwinding; a second cancel would abandon teardown
            logger.warning("Cleanup in progress, ignoring signal", extra={"signal": signal.Signals(signum).name})
            return
        logger.warning("Interrupted, cleaning up", extra={"signal": signal.Signals(signum).name})
        received.append(signum)
        task.cancel()

    for signum in _INTERRUPT_SIGNALS:
        loop.add_signal_handler(signum, on_signal, signum)
    try:
        return await task
    except asyncio.CancelledError:
        if not received:
            raise
        raise RunInterrupted(
            f"Run interrupted by {signal.Signals(received[0]).name}",
            context={"signal": received[0]},
            signum=received[0],
        ) from None
    finally:
        for signum in _INTERRUPT_SIGNALS:
            loop.remove_signal_handler(signum)
