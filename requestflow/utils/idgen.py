"""ID Generation Utilities"""
import uuid
from typing import Optional


def generate_id(prefix: Optional[str] = None) -> str:
    """
    Generate a unique ID with optional prefix

    Args:
        prefix: Optional prefix for the ID (e.g., 'REQ', 'STEP', 'TASK')

    Returns:
        Unique ID string

    Examples:
        >>> generate_id('REQ')
        'REQ-a1b2c3d4e5f6'
        >>> generate_id()
        'a1b2c3d4e5f6'
    """
    unique_part = uuid.uuid4().hex[:12]

    if prefix:
        return f"{prefix}-{unique_part}"
    return unique_part


def generate_request_id() -> str:
    """Generate request ID"""
    return generate_id("REQ")


def generate_step_instance_id() -> str:
    """Generate step instance ID"""
    return generate_id("STEP")


def generate_task_id() -> str:
    """Generate task ID"""
    return generate_id("TASK")


def generate_event_id() -> str:
    """Generate audit event ID"""
    return generate_id("EVT")


def generate_correlation_id() -> str:
    """Generate correlation ID for request tracing"""
    return str(uuid.uuid4())


def generate_lock_token() -> str:
    """Generate owner token for a request lease"""
    return generate_id("LOCK")
