from asyncio import CancelledError, Task, create_task
from collections.abc import Coroutine
from logging import getLogger
from typing import Any, Optional, TypeVar


log = getLogger(__name__)

_T = TypeVar("_T")


class TaskManager:
    """Keeps references to background tasks until they are done."""
    _tasks: set[Task[Any]] = set()

    @classmethod
    def count(cls) -> int:
        return len(cls._tasks)

    @classmethod
    def cancel_all(cls) -> int:
        num_tasks = len(cls._tasks)
        log.info(f"TaskManager: cancel all remaining {num_tasks} tasks")
        for task in cls._tasks:
            task.cancel()
        return num_tasks

    @classmethod
    async def shutdown(cls, *_: Any) -> None:
        log.info("\n======== Shutting down ========")
        TaskManager.cancel_all()

    @classmethod
    def fire_and_forget(
        cls,
        coroutine: Coroutine[Any, Any, _T],
        name: Optional[str] = None,
    ) -> Task[_T]:
        """
        Schedules the `coroutine` as a task and keeps a reference to it.

        When the task ends, any exception it raised is logged.
        """
        task = create_task(coroutine, name=name)

        def task_done(_future: Any) -> None:
            try:
                # This throws an exception if there was any in the task.
                task.result()
            except CancelledError:
                log.info(f"Cancelled {task.get_name()}")
            except Exception as e:
                log.exception(
                    "%s occurred in fire-and-forget task %s.",
                    e.__class__.__name__,
                    task.get_name(),
                )
            finally:
                cls._tasks.discard(task)

        cls._tasks.add(task)
        task.add_done_callback(task_done)
        return task
