"""Undo completed steps of a multi-step registration when a later step fails."""

from __future__ import annotations

from typing import Any, Callable

from pxe_image_manager.logging import LoggerFactory


log = LoggerFactory.for_system()


class Rollback:
    """Ordered list of completed steps and how to undo each one.

    Usage:
        with Rollback("add ubuntu.iso") as rollback:
            store()
            rollback.record("stored image", delete_stored)
            export()
            rollback.record("NFS export", unexport)
            rollback.commit()

    If the block raises before ``commit()``, recorded steps are undone in
    reverse order and the original exception propagates. Undo failures are
    logged and do not stop the remaining undos.
    """

    def __init__(self, label: str = ""):
        self.label = label
        self.steps: list[tuple[str, Callable[[], Any]]] = []

    def record(self, description: str, undo: Callable[[], Any]) -> None:
        self.steps.append((description, undo))

    def commit(self) -> None:
        self.steps.clear()

    def unwind(self) -> list[str]:
        """Undo every recorded step, newest first. Returns the failed steps."""
        failed = []
        while self.steps:
            description, undo = self.steps.pop()
            try:
                undo()
                log.info(f"Rolled back: {description}")
            except Exception as e:
                log.error(f"Failed to roll back {description}: {e}")
                failed.append(description)
        return failed

    def __enter__(self) -> Rollback:
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        if exc_type is not None and self.steps:
            log.warning(
                f"{self.label or 'Operation'} failed, rolling back {len(self.steps)} steps"
            )
            self.unwind()
        return False
