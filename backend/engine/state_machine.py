"""
GENERIC STATE MACHINE UTILITY

A reusable state machine for entity status fields with:
- Static transition table registration
- Optional guard conditions per transition
- Optional field handlers (extra fields written atomically with the status)
- Terminal state declaration
- Idempotent re-entry (target == current is a no-op, not an error)
- Post-transition callbacks

The machine only decides; callers persist the result in a single conditional
write built from get_status_update() + get_history_entry().

Usage:
    machine = StateMachine("payment_record", terminal_states={"completed"})
    machine.register("initiated", "processing")
    machine.register("processing", "completed", handler=stamp_completed)

    decision = await machine.evaluate(doc, "processing", context={...})
    if not decision.is_noop:
        update = machine.get_status_update(decision.to_state, decision.fields)
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set, Tuple
import logging

from engine.exceptions import GuardConditionError, InvalidTransition, WorkflowError

logger = logging.getLogger(__name__)


# =============================================================================
# TYPE DEFINITIONS
# =============================================================================

# Guard signature: async def guard(entity_doc, context) -> Tuple[bool, str]
GuardCondition = Callable[[Dict[str, Any], Dict[str, Any]], Awaitable[Tuple[bool, str]]]

# Handler signature: async def handler(entity_doc, context) -> Dict[str, Any] (extra $set fields)
FieldHandler = Callable[[Dict[str, Any], Dict[str, Any]], Awaitable[Dict[str, Any]]]

# Callback signature: async def callback(entity_doc, from_state, to_state, context)
TransitionCallback = Callable[[Dict[str, Any], str, str, Dict[str, Any]], Awaitable[None]]


class Transition:
    """Definition of a state transition."""

    def __init__(
        self,
        from_state: str,
        to_state: str,
        guard: Optional[GuardCondition] = None,
        handler: Optional[FieldHandler] = None,
        description: str = ""
    ):
        self.from_state = from_state
        self.to_state = to_state
        self.guard = guard
        self.handler = handler
        self.description = description

    def __repr__(self):
        return f"Transition({self.from_state} -> {self.to_state})"


@dataclass
class TransitionDecision:
    """Outcome of evaluating a requested transition."""
    from_state: str
    to_state: str
    is_noop: bool = False
    fields: Dict[str, Any] = field(default_factory=dict)


# =============================================================================
# STATE MACHINE
# =============================================================================

class StateMachine:
    """
    Table-driven state machine.

    Example:
        machine = StateMachine("scholarship_application", terminal_states={"rejected"})
        machine.register_table({"draft": ["submitted"], "submitted": ["rejected"]})
        decision = await machine.evaluate(doc, "submitted")
    """

    def __init__(
        self,
        entity_name: str,
        status_field: str = "status",
        history_field: Optional[str] = "state_history",
        terminal_states: Optional[Iterable[str]] = None
    ):
        self.entity_name = entity_name
        self.status_field = status_field
        self.history_field = history_field
        self.terminal_states: Set[str] = set(terminal_states or [])

        # Transitions indexed by (from_state, to_state)
        self._transitions: Dict[Tuple[str, str], Transition] = {}
        self._states: Set[str] = set(self.terminal_states)
        self._post_callbacks: List[TransitionCallback] = []

    # =========================================================================
    # REGISTRATION
    # =========================================================================

    def register(
        self,
        from_state: str,
        to_state: str,
        guard: Optional[GuardCondition] = None,
        handler: Optional[FieldHandler] = None,
        description: str = ""
    ) -> "StateMachine":
        """Register a single transition. Returns self for chaining."""
        key = (from_state, to_state)
        if key in self._transitions:
            logger.warning(
                f"[STATE_MACHINE] Overwriting transition {self.entity_name}: "
                f"'{from_state}' -> '{to_state}'"
            )
        if from_state in self.terminal_states:
            raise WorkflowError(
                f"Cannot register transition out of terminal state '{from_state}' for {self.entity_name}"
            )

        self._transitions[key] = Transition(
            from_state=from_state,
            to_state=to_state,
            guard=guard,
            handler=handler,
            description=description
        )
        self._states.add(from_state)
        self._states.add(to_state)
        return self

    def register_table(self, table: Dict[str, Iterable[str]]) -> "StateMachine":
        """Register every edge of an adjacency table."""
        for src, targets in table.items():
            for dst in targets:
                self.register(src, dst)
        return self

    def set_guard(self, from_state: str, to_state: str, guard: GuardCondition) -> None:
        self._require(from_state, to_state).guard = guard

    def set_handler(self, from_state: str, to_state: str, handler: FieldHandler) -> None:
        self._require(from_state, to_state).handler = handler

    def on_post_transition(self, callback: TransitionCallback) -> "StateMachine":
        """Register callback to run AFTER a transition has been persisted."""
        self._post_callbacks.append(callback)
        return self

    def _require(self, from_state: str, to_state: str) -> Transition:
        try:
            return self._transitions[(from_state, to_state)]
        except KeyError:
            raise InvalidTransition(self.entity_name, from_state, to_state, self.get_allowed_transitions(from_state))

    # =========================================================================
    # VALIDATION
    # =========================================================================

    def get_allowed_transitions(self, from_state: str) -> List[str]:
        """Get list of valid target states from a given state."""
        return [dst for (src, dst) in self._transitions if src == from_state]

    def can_transition(self, from_state: str, to_state: str) -> bool:
        """Check if transition is registered (does not check guards)."""
        return (from_state, to_state) in self._transitions

    def is_terminal(self, state: str) -> bool:
        return state in self.terminal_states

    def validate_transition(self, from_state: str, to_state: str) -> None:
        """Raises InvalidTransition if the edge is not in the table."""
        if not self.can_transition(from_state, to_state):
            raise InvalidTransition(
                entity=self.entity_name,
                from_state=from_state,
                to_state=to_state,
                allowed=self.get_allowed_transitions(from_state)
            )

    async def check_guard(
        self,
        entity_doc: Dict[str, Any],
        from_state: str,
        to_state: str,
        context: Dict[str, Any]
    ) -> None:
        """Raises GuardConditionError if the transition's guard rejects."""
        transition = self._transitions.get((from_state, to_state))
        if transition and transition.guard:
            allowed, reason = await transition.guard(entity_doc, context)
            if not allowed:
                raise GuardConditionError(self.entity_name, from_state, to_state, reason)

    # =========================================================================
    # EVALUATION
    # =========================================================================

    async def evaluate(
        self,
        entity_doc: Dict[str, Any],
        to_state: str,
        context: Optional[Dict[str, Any]] = None
    ) -> TransitionDecision:
        """
        Decide whether entity_doc may move to to_state.

        Returns:
            TransitionDecision with is_noop=True when already in to_state,
            otherwise the extra fields produced by the transition handler.

        Raises:
            InvalidTransition: edge not registered (including out of terminal states)
            GuardConditionError: guard rejected the transition
        """
        context = context or {}
        from_state = entity_doc.get(self.status_field)
        if from_state is None:
            raise WorkflowError(f"Entity missing status field: {self.status_field}")

        if from_state == to_state:
            logger.debug(f"[STATE_MACHINE] {self.entity_name} already in '{to_state}', no-op")
            return TransitionDecision(from_state=from_state, to_state=to_state, is_noop=True)

        self.validate_transition(from_state, to_state)
        await self.check_guard(entity_doc, from_state, to_state, context)

        transition = self._transitions[(from_state, to_state)]
        fields: Dict[str, Any] = {}
        if transition.handler:
            fields = await transition.handler(entity_doc, context) or {}

        return TransitionDecision(from_state=from_state, to_state=to_state, fields=fields)

    async def run_post_callbacks(
        self,
        entity_doc: Dict[str, Any],
        from_state: str,
        to_state: str,
        context: Optional[Dict[str, Any]] = None
    ) -> None:
        """Post-commit callbacks. Failures are logged; the transition already happened."""
        for callback in self._post_callbacks:
            try:
                await callback(entity_doc, from_state, to_state, context or {})
            except Exception as e:
                logger.error(
                    f"[STATE_MACHINE] Post-callback error {self.entity_name} "
                    f"'{from_state}' -> '{to_state}': {e}"
                )

    def get_status_update(self, to_state: str, extra_fields: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Build the $set document for changing status."""
        now = datetime.utcnow()
        update = {
            self.status_field: to_state,
            f"{self.status_field}_changed_at": now,
            f"{self.status_field}_timestamps.{to_state}": now,
            "updated_at": now,
        }
        update.update(extra_fields or {})
        return update

    def get_history_entry(
        self,
        from_state: str,
        to_state: str,
        user_id: Optional[str] = None,
        role: Optional[str] = None,
        notes: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """History entry appended to the entity's history array in the same write."""
        return {
            "from_state": from_state,
            "to_state": to_state,
            "transitioned_at": datetime.utcnow(),
            "transitioned_by": user_id,
            "actor_role": role,
            "notes": notes,
            "metadata": metadata or {}
        }

    def __repr__(self):
        return (
            f"StateMachine({self.entity_name}, "
            f"states={len(self._states)}, "
            f"transitions={len(self._transitions)})"
        )
