"""
Input Validators for Orchestration Services.

Pure functions that check caller-supplied values before a transaction is
opened. Every failure raises InvalidInputError (a ValueError) naming the
offending field.
"""

import uuid
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

from crowdtest.domain.errors import InvalidInputError
from crowdtest.domain.models.session import PROGRESS_FIELDS


MAX_FEEDBACK_LENGTH = 2000
MAX_TITLE_LENGTH = 255
MIN_RATING = 1
MAX_RATING = 5


# ═══════════════════════════════════════════════════════════════════════════════
# Identifier Validators
# ═══════════════════════════════════════════════════════════════════════════════


def validate_id(value: str, field_name: str = "id", strict: bool = False) -> str:
    """
    Validate that a value is a usable identifier.

    Args:
        value: Value to validate
        field_name: Name of the field for error messages
        strict: If True, require UUID format. If False, accept any non-empty string.

    Returns:
        The validated, stripped identifier

    Raises:
        InvalidInputError: If value is empty or invalid
    """
    if not value:
        raise InvalidInputError(f"{field_name} is required", field=field_name, value=value)

    if not isinstance(value, str):
        raise InvalidInputError(f"{field_name} must be a string", field=field_name, value=value)

    normalized = value.strip()

    if not normalized:
        raise InvalidInputError(f"{field_name} cannot be empty", field=field_name, value=value)

    if len(normalized) > 64:
        raise InvalidInputError(f"{field_name} exceeds maximum length of 64", field=field_name)

    if strict:
        try:
            return str(uuid.UUID(normalized))
        except (ValueError, AttributeError):
            raise InvalidInputError(
                f"Invalid {field_name}: '{value}' is not a valid UUID format",
                field=field_name,
                value=value,
            )

    return normalized


def validate_test_id(test_id: str) -> str:
    return validate_id(test_id, "test_id")


def validate_session_id(session_id: str) -> str:
    return validate_id(session_id, "session_id")


# ═══════════════════════════════════════════════════════════════════════════════
# String Validators
# ═══════════════════════════════════════════════════════════════════════════════


def validate_string(
    value: Optional[str],
    field_name: str,
    min_length: int = 0,
    max_length: int = 10000,
    required: bool = True,
) -> Optional[str]:
    """
    Validate a string value.

    Returns:
        The stripped string, or None if not required and empty

    Raises:
        InvalidInputError: If validation fails
    """
    if value is None:
        if required:
            raise InvalidInputError(f"{field_name} is required", field=field_name)
        return None

    if not isinstance(value, str):
        raise InvalidInputError(f"{field_name} must be a string", field=field_name, value=value)

    stripped = value.strip()

    if not stripped and required:
        raise InvalidInputError(f"{field_name} cannot be empty", field=field_name)

    if len(stripped) < min_length:
        raise InvalidInputError(
            f"{field_name} must be at least {min_length} characters", field=field_name
        )

    if len(stripped) > max_length:
        raise InvalidInputError(
            f"{field_name} exceeds maximum length of {max_length} characters", field=field_name
        )

    return stripped if stripped else None


def validate_feedback(feedback: Optional[str]) -> Optional[str]:
    """Feedback is optional free text of at most 2000 characters."""
    return validate_string(feedback, "feedback", max_length=MAX_FEEDBACK_LENGTH, required=False)


def validate_title(title: str) -> str:
    return validate_string(title, "title", min_length=1, max_length=MAX_TITLE_LENGTH)


def validate_reason(reason: Optional[str]) -> Optional[str]:
    return validate_string(reason, "reason", max_length=1000, required=False)


# ═══════════════════════════════════════════════════════════════════════════════
# Numeric Validators
# ═══════════════════════════════════════════════════════════════════════════════


def validate_rating(rating: Optional[int]) -> Optional[int]:
    """
    Validate an optional session rating.

    Raises:
        InvalidInputError: If rating is not an integer between 1 and 5
    """
    if rating is None:
        return None

    if isinstance(rating, bool) or not isinstance(rating, int):
        raise InvalidInputError("rating must be an integer", field="rating", value=rating)

    if not MIN_RATING <= rating <= MAX_RATING:
        raise InvalidInputError(
            f"rating must be between {MIN_RATING} and {MAX_RATING}",
            field="rating",
            value=rating,
        )

    return rating


def validate_capacity(max_participants: int) -> int:
    """Capacity is a whole number of at least 1."""
    if isinstance(max_participants, bool) or not isinstance(max_participants, int):
        raise InvalidInputError(
            "max_participants must be an integer", field="max_participants", value=max_participants
        )
    if max_participants < 1:
        raise InvalidInputError(
            "max_participants must be at least 1", field="max_participants", value=max_participants
        )
    return max_participants


def validate_reward(reward: Any) -> Decimal:
    """
    Validate a per-participant reward and normalize it to two decimals.

    Floats are rejected; pass a Decimal, int or numeric string.
    """
    if isinstance(reward, (bool, float)):
        raise InvalidInputError(
            "reward must be a Decimal, int or numeric string", field="reward_per_participant"
        )
    try:
        amount = Decimal(str(reward))
    except (InvalidOperation, ValueError):
        raise InvalidInputError(
            f"reward '{reward}' is not a number", field="reward_per_participant", value=reward
        )
    if not amount.is_finite() or amount <= 0:
        raise InvalidInputError(
            "reward must be positive", field="reward_per_participant", value=reward
        )
    return amount.quantize(Decimal("0.01"))


# ═══════════════════════════════════════════════════════════════════════════════
# Progress Validators
# ═══════════════════════════════════════════════════════════════════════════════


def validate_progress_update(partial: Dict[str, Any]) -> Dict[str, Any]:
    """
    Validate a progress update payload.

    Allowed keys: feedback, task_results, progress, current_task.

    Raises:
        InvalidInputError: If the payload is empty, has unknown keys or bad types
    """
    if not isinstance(partial, dict):
        raise InvalidInputError("progress update must be a dictionary", field="progress")

    if not partial:
        raise InvalidInputError("progress update cannot be empty", field="progress")

    unknown = sorted(set(partial) - PROGRESS_FIELDS)
    if unknown:
        raise InvalidInputError(
            f"Unknown progress fields: {', '.join(unknown)}", field="progress", value=unknown
        )

    validated: Dict[str, Any] = {}
    if "feedback" in partial:
        validated["feedback"] = validate_feedback(partial["feedback"])
    for key in ("task_results", "progress"):
        if key in partial:
            if not isinstance(partial[key], dict):
                raise InvalidInputError(f"{key} must be a dictionary", field=key)
            validated[key] = dict(partial[key])
    if "current_task" in partial:
        validated["current_task"] = validate_string(
            partial["current_task"], "current_task", max_length=256, required=False
        )
    return validated


__all__ = [
    # Identifier validators
    "validate_id",
    "validate_test_id",
    "validate_session_id",
    # String validators
    "validate_string",
    "validate_feedback",
    "validate_title",
    "validate_reason",
    # Numeric validators
    "validate_rating",
    "validate_capacity",
    "validate_reward",
    # Progress validators
    "validate_progress_update",
    # Constants
    "MAX_FEEDBACK_LENGTH",
]
