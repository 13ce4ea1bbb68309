"""Status condition state machine for Instances.

An Instance carries exactly one condition at a time. Moving to a new
condition replaces the previous one; nothing is ever appended.

    none -> Loaded | NotLoaded | NotSelected | MapOwnerNotFound | MapOwnerNotLoaded
    Loaded <-> NotLoaded | NotSelected | MapOwnerNotFound | MapOwnerNotLoaded
    any    -> NotUnloaded (retryable) -> Unloaded (terminal, deletion only)

BytecodeSelectorError and ConfigError can be entered from any
non-terminal state and are left as soon as the spec is corrected.
"""

from __future__ import annotations

from agent.models import Condition, ConditionType, Instance

# Reason and default message per condition type.
CONDITION_DETAILS: dict[ConditionType, tuple[str, str]] = {
    ConditionType.LOADED: ("bpfmanLoaded", "Successfully loaded bpfProgram"),
    ConditionType.NOT_LOADED: ("bpfmanNotLoaded", "Failed to load bpfProgram"),
    ConditionType.NOT_UNLOADED: ("bpfmanNotUnloaded", "Failed to unload bpfProgram"),
    ConditionType.UNLOADED: ("bpfmanUnloaded", "This BpfProgram object and all it's bpfman programs have been unloaded"),
    ConditionType.NOT_SELECTED: ("nodeNotSelected", "This node is not selected to run the bpfProgram"),
    ConditionType.MAP_OWNER_NOT_FOUND: ("mapOwnerNotFound", "BpfProgram map owner not found"),
    ConditionType.MAP_OWNER_NOT_LOADED: ("mapOwnerNotLoaded", "BpfProgram map owner not loaded"),
    ConditionType.BYTECODE_SELECTOR_ERROR: ("bytecodeSelectorError", "There was an error selecting the bytecode source"),
    ConditionType.CONFIG_ERROR: ("configError", "The program spec cannot be applied as written"),
}

# Conditions the engine reports before any daemon action is possible.
GATING_CONDITIONS = frozenset({
    ConditionType.NOT_SELECTED,
    ConditionType.MAP_OWNER_NOT_FOUND,
    ConditionType.MAP_OWNER_NOT_LOADED,
})

# Daemon-reported failures: written and retried with backoff.
RETRYABLE_CONDITIONS = frozenset({
    ConditionType.NOT_LOADED,
    ConditionType.NOT_UNLOADED,
})


def build(condition_type: ConditionType, message: str | None = None) -> Condition:
    """Build the canonical condition for a type.

    Args:
        condition_type: Which condition to build.
        message: Optional override for the human-readable message, used to
            carry the concrete error for failure conditions.
    """
    reason, default_message = CONDITION_DETAILS[condition_type]
    return Condition(
        type=condition_type,
        reason=reason,
        message=message or default_message,
    )


def transition(instance: Instance, condition: Condition) -> bool:
    """Replace the Instance's condition in place.

    Returns:
        True if the stored condition changed and must be written back,
        False if the Instance already carries an equivalent condition.
    """
    if condition.same_as(instance.condition):
        return False
    instance.condition = condition
    return True


def is_loaded(instance: Instance) -> bool:
    return instance.condition_type == ConditionType.LOADED
