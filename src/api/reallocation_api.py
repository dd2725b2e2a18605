"""User-friendly API for the reallocation pipeline.

This module provides the request-facing surface: positions with their
current yield, manual single-position and all-position triggers, history
and statistics. Every method returns plain dicts ready for JSON.
"""

import threading
from typing import Any, Dict, List, Optional

from src.execution.base import ReallocationOutcome, ReallocationPlan
from src.orchestration.workflows import ReallocationWorkflow
from src.utils.exceptions import StorageError
from src.utils.logging import get_logger
from src.utils.units import normalize_address

logger = get_logger(__name__)


class ReallocationAPI:
    """User-friendly API over a ReallocationWorkflow.

    Manual triggers may run while the scheduled batch runs; the ledger's
    atomic reallocate is what keeps a position from moving twice.

    Example:
        >>> api = ReallocationAPI(workflow)
        >>> for position in api.get_user_positions(user):
        ...     print(position["vault"], position["apy"])
        >>> result = api.optimize_position(user, 0)
        >>> print(result["status"])
    """

    def __init__(self, workflow: ReallocationWorkflow):
        """Initialize ReallocationAPI.

        Args:
            workflow: Fully wired workflow (ledger, engine, executor, store)
        """
        self.workflow = workflow
        self._batch_lock = threading.Lock()
        self._batch_thread: Optional[threading.Thread] = None
        self.last_batch: Optional[Dict[str, Any]] = None

    def get_user_positions(self, user: str) -> List[Dict[str, Any]]:
        """Positions of ``user`` with the current APY of their vault.

        Example:
            >>> api.get_user_positions("0xabc...")[0]["apy"]
            3.0
        """
        user = normalize_address(user)
        positions = self.workflow.ledger.get_user_positions(user)
        yields = self.workflow.engine.scan_yields()

        result = []
        for index, position in enumerate(positions):
            entry = position.to_dict()
            entry["index"] = index
            opportunity = yields.get(position.vault)
            entry["apy"] = opportunity.apy if opportunity else None
            result.append(entry)
        return result

    def evaluate_position(self, user: str, position_index: int) -> Dict[str, Any]:
        """Decision for one position, without acting on it."""
        positions = self.workflow.ledger.get_user_positions(normalize_address(user))
        if not 0 <= position_index < len(positions):
            raise ValueError(f"Position index {position_index} out of range")
        return self.workflow.engine.evaluate(positions[position_index]).to_dict()

    def optimize_position(self, user: str, position_index: int, dry_run: bool = False) -> Dict[str, Any]:
        """Reallocate one position now.

        Args:
            user: Position owner
            position_index: Index of the position
            dry_run: Return the transaction plan instead of submitting

        Returns:
            Outcome dict, or ``{"status": "planned", "plan": {...}}`` on a
            dry run that would send a transaction
        """
        if dry_run:
            result = self.workflow.executor.plan(user, position_index)
            if isinstance(result, ReallocationPlan):
                return {"status": "planned", "plan": result.to_dict()}
            return result.to_dict()

        if self.workflow.store:
            self.workflow.store.track_user(user)
        outcome: ReallocationOutcome = self.workflow.executor.execute(user, position_index)
        return outcome.to_dict()

    def optimize_all_async(self) -> Dict[str, Any]:
        """Start the batch driver on a background thread and return at once."""
        with self._batch_lock:
            if self._batch_thread is not None and self._batch_thread.is_alive():
                return {"status": "already_running"}

            self._batch_thread = threading.Thread(
                target=self._run_batch, name="optimize-all", daemon=True
            )
            self._batch_thread.start()

        logger.info("Manual optimize-all started in background")
        return {"status": "optimizing"}

    def wait_for_batch(self, timeout: Optional[float] = None) -> Optional[Dict[str, Any]]:
        """Block until a background batch finishes; returns its result."""
        thread = self._batch_thread
        if thread is not None:
            thread.join(timeout)
        return self.last_batch

    def _run_batch(self) -> None:
        try:
            self.last_batch = self.workflow.optimization_cycle()
        except Exception as e:
            logger.error("Background optimize-all failed: %s", e, exc_info=True)
            self.last_batch = {"status": "failed", "error": str(e)}

    def get_yield_statistics(self) -> Dict[str, Any]:
        return self.workflow.engine.get_yield_statistics()

    def get_optimization_history(self, user: str, limit: int = 50) -> List[Dict[str, Any]]:
        """Recorded reallocations of ``user``, newest first."""
        store = self._require_store()
        return [record.to_dict() for record in store.get_user_optimizations(user, limit)]

    def get_optimization_stats(self) -> Dict[str, Any]:
        return self._require_store().get_stats()

    def get_threshold(self) -> float:
        return self.workflow.engine.threshold_bps

    def set_threshold(self, threshold_bps: float) -> Dict[str, Any]:
        """Change the decision threshold (basis points of APY)."""
        self.workflow.engine.set_threshold(threshold_bps)
        return {"threshold_bps": self.workflow.engine.threshold_bps}

    def _require_store(self):
        if self.workflow.store is None:
            raise StorageError("No record store configured")
        return self.workflow.store
