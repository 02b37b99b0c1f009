"""ID Generation Utilities"""
import uuid
from datetime import datetime, timezone
from typing import Optional


def generate_id(prefix: Optional[str] = None) -> str:
    """
    Generate a unique ID with optional prefix
    
    Args:
        prefix: Optional prefix for the ID (e.g., 'TPL', 'INST', 'TSK')
        
    Returns:
        Unique ID string
        
    Examples:
        >>> generate_id('TSK')
        'TSK-a1b2c3d4e5f6'
        >>> generate_id()
        'a1b2c3d4e5f6'
    """
    unique_part = uuid.uuid4().hex[:12]
    
    if prefix:
        return f"{prefix}-{unique_part}"
    return unique_part


def generate_template_id() -> str:
    """Generate approval template version ID"""
    return generate_id("TPL")


def generate_rule_id() -> str:
    """Generate routing rule ID"""
    return generate_id("RULE")


def generate_instance_id() -> str:
    """Generate approval instance ID"""
    return generate_id("INST")


def generate_stage_id() -> str:
    """Generate instance stage ID"""
    return generate_id("STG")


def generate_task_id() -> str:
    """Generate approval task ID"""
    return generate_id("TSK")


def generate_snapshot_id() -> str:
    """Generate assignment snapshot ID"""
    return generate_id("SNAP")


def generate_event_id() -> str:
    """Generate approval event ID"""
    return generate_id("EVT")


def generate_escalation_id() -> str:
    """Generate escalation record ID"""
    return generate_id("ESC")


def generate_lock_token() -> str:
    """Generate an instance lock token"""
    return generate_id("LCK")


def generate_correlation_id() -> str:
    """
    Generate a correlation ID for request tracing
    
    Returns:
        Correlation ID string with timestamp prefix
    """
    timestamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
    unique_part = uuid.uuid4().hex[:8]
    return f"COR-{timestamp}-{unique_part}"
