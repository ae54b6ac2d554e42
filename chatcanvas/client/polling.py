import asyncio
from dataclasses import dataclass, field
from typing import Optional

from chatcanvas.utils.error_util import ChatCanvasError, TransientNetworkError
from chatcanvas.utils.logging_util import configure_logging

logger = configure_logging()

TASK_PROCESSING = "processing"
TASK_COMPLETED = "completed"
TASK_FAILED = "failed"
TASK_TIMED_OUT = "timed_out"
FINAL_STATES = (TASK_COMPLETED, TASK_FAILED, TASK_TIMED_OUT)


@dataclass
class TaskHandle:
    task_id: str
    conversation_id: Optional[str] = None
    status: str = TASK_PROCESSING
    output_image_url: Optional[str] = None
    error: Optional[str] = None
    attempts: int = 0
    stopped: bool = False
    runner: Optional[asyncio.Task] = field(default=None, repr=False)

    @property
    def done(self):
        return self.status in FINAL_STATES or self.stopped


class TaskPoller:
    """Polls image task status until a final state, the attempt budget, or a stop.

    Handles leave ``handles`` once their final update has been delivered.
    """

    def __init__(self, gateway, poll_interval=5.0, max_poll_attempts=60, on_update=None):
        self.gateway = gateway
        self.poll_interval = poll_interval
        self.max_poll_attempts = max_poll_attempts
        self.on_update = on_update
        self.handles = {}
        self._runners = set()

    def track(self, task_id, conversation_id=None):
        existing = self.handles.get(task_id)
        if existing and not existing.done:
            return existing
        handle = TaskHandle(task_id=task_id, conversation_id=conversation_id)
        handle.runner = asyncio.create_task(self._poll(handle))
        self._runners.add(handle.runner)
        handle.runner.add_done_callback(self._runner_done)
        self.handles[task_id] = handle
        return handle

    @property
    def active(self):
        return [handle for handle in self.handles.values() if not handle.done]

    def _forget(self, handle):
        if self.handles.get(handle.task_id) is handle:
            del self.handles[handle.task_id]

    def _runner_done(self, runner):
        self._runners.discard(runner)
        if not runner.cancelled() and runner.exception() is not None:
            logger.error(f"Task polling ended with an unexpected error: {runner.exception()!r}")

    async def _poll(self, handle):
        try:
            while handle.attempts < self.max_poll_attempts:
                await asyncio.sleep(self.poll_interval)
                handle.attempts += 1
                try:
                    data = await self.gateway.get_task(handle.task_id)
                except TransientNetworkError as e:
                    logger.info(f"Polling task {handle.task_id} hit a network error, retrying: {e.message}")
                    continue
                except ChatCanvasError as e:
                    handle.status = TASK_FAILED
                    handle.error = e.message
                    break

                status = data.get("status")
                if status == TASK_COMPLETED:
                    handle.status = TASK_COMPLETED
                    handle.output_image_url = data.get("processed_image_url")
                    break
                if status == TASK_FAILED:
                    handle.status = TASK_FAILED
                    handle.error = data.get("error") or "Image processing failed"
                    break
            else:
                handle.status = TASK_TIMED_OUT
                handle.error = "Image processing timed out"

            logger.info(f"Stopped polling task {handle.task_id}: {handle.status} after {handle.attempts} attempts")
            if self.on_update is not None:
                try:
                    await self.on_update(handle)
                except ChatCanvasError as e:
                    logger.error(f"Handling the final state of task {handle.task_id} failed: {e.message}")
        finally:
            self._forget(handle)

    def stop(self, task_id):
        handle = self.handles.get(task_id)
        if handle is None or handle.done:
            return False
        handle.stopped = True
        self._forget(handle)
        if handle.runner is not None and handle.runner is not asyncio.current_task():
            handle.runner.cancel()
        return True

    def stop_conversation(self, conversation_id):
        return [handle.task_id for handle in self.active if handle.conversation_id == conversation_id and self.stop(handle.task_id)]

    async def close(self):
        runners = list(self._runners)
        for handle in self.active:
            self.stop(handle.task_id)
        await asyncio.gather(*runners, return_exceptions=True)
