"""
JSON Serialisation Helpers
==========================
Serialisation utilities for values that are not natively JSON-serialisable:
dataclasses (devices, history entries), pydantic models (automations),
enums (event types), sets (capabilities) and datetimes.

Used for storage JSON columns, event bus payloads and WebSocket frames.
"""
import json
import logging
import dataclasses
from typing import Any
from datetime import datetime, date
from enum import Enum

from pydantic import BaseModel

logger = logging.getLogger("json_helpers")


def serialise_value(value: Any) -> Any:
    """
    Recursively serialise a value to be JSON-compatible.

    Args:
        value: Any value that needs to be JSON-serialisable

    Returns:
        JSON-serialisable representation of the value
    """
    if value is None:
        return None

    # Fast path
    if isinstance(value, (str, int, float, bool)):
        return value

    if isinstance(value, bytes):
        try:
            return value.decode('utf-8')
        except UnicodeDecodeError:
            return value.hex()

    if isinstance(value, (datetime, date)):
        return value.isoformat()

    if isinstance(value, Enum):
        return value.value

    if isinstance(value, BaseModel):
        return serialise_value(value.model_dump(mode="json"))

    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        if hasattr(value, 'to_dict'):
            return serialise_value(value.to_dict())
        return serialise_value(dataclasses.asdict(value))

    if isinstance(value, dict):
        return {serialise_key(k): serialise_value(v) for k, v in value.items()}

    # Sets are sorted so stored payloads are stable
    if isinstance(value, (set, frozenset)):
        try:
            return [serialise_value(item) for item in sorted(value)]
        except TypeError:
            return [serialise_value(item) for item in value]

    if isinstance(value, (list, tuple)):
        return [serialise_value(item) for item in value]

    if hasattr(value, '__dict__'):
        try:
            return serialise_value(vars(value))
        except Exception as e:
            logger.debug(f"Falling back to str() for {type(value).__name__}: {e}")

    try:
        return str(value)
    except Exception as e:
        logger.warning(f"Failed to serialise {type(value).__name__}: {e}")
        return f"<{type(value).__name__}>"


def serialise_key(key: Any) -> str:
    """Convert any key type to a string for JSON dict keys."""
    if key is None:
        return "null"
    if isinstance(key, str):
        return key
    if isinstance(key, Enum):
        return str(key.value)
    if isinstance(key, bytes):
        return key.hex()
    return str(key)


def safe_json_dumps(obj: Any, **kwargs) -> str:
    """
    Safely serialise any object to JSON string.

    Drop-in replacement for json.dumps() that understands hub types.
    """
    try:
        return json.dumps(serialise_value(obj), **kwargs)
    except Exception as e:
        logger.error(f"Failed to serialise to JSON: {e}")
        return json.dumps({"error": "serialisation_failed", "type": type(obj).__name__})


def safe_json_loads(json_str: str, default: Any = None) -> Any:
    """
    Deserialise a JSON column. Empty values yield ``default``.
    """
    if json_str is None or json_str == "":
        return default
    return json.loads(json_str)


def prepare_for_json(data: Any) -> Any:
    """
    Prepare data structure for JSON serialization.

    This is the main function to use before passing data to json.dumps(),
    FastAPI responses, or WebSocket broadcasts.
    """
    return serialise_value(data)
