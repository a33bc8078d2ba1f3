import asyncio
from typing import Optional


async def cancel_task(task: Optional[asyncio.Task]) -> None:
    """Cancel ``task`` and wait for it to unwind; no-op for ``None`` or finished tasks."""
    if task is None:
        return
    if not task.done():
        task.cancel()
    await asyncio.gather(task, return_exceptions=True)
