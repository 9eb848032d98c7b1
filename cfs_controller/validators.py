"""
Input parsing and validation helpers.
"""

import json
import re
import shlex
from decimal import Decimal
from typing import Dict

import yaml
from kubernetes.utils import parse_quantity as _k8s_parse_quantity

from cfs_controller.exceptions import InvalidArgument

_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "μs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|μs|ms|s|m|h)")


def parse_duration(value: str) -> float:
    """
    Parse a Go style duration string (e.g. "1h30m", "90s", "1.5h").

    Args:
        value: Duration string

    Returns:
        Duration in seconds

    Raises:
        ValueError: If the string is not a valid duration
    """
    text = value.strip()
    if not text:
        raise ValueError("Duration cannot be empty")

    sign = 1.0
    if text[0] in "+-":
        sign = -1.0 if text[0] == "-" else 1.0
        text = text[1:]
    if text == "0":
        return 0.0

    total = 0.0
    pos = 0
    while pos < len(text):
        match = _DURATION_PART.match(text, pos)
        if not match:
            raise ValueError(f"Invalid duration: {value!r}")
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos == 0:
        raise ValueError(f"Invalid duration: {value!r}")
    return sign * total


def parse_yaml_or_json(source: str) -> Dict[str, str]:
    """
    Parse a string map encoded either as YAML or as JSON.

    Raises:
        InvalidArgument: If the source is neither, or is not a mapping
    """
    try:
        data = yaml.safe_load(source)
    except yaml.YAMLError:
        try:
            data = json.loads(source)
        except ValueError as e:
            raise InvalidArgument(details=f"Parse yaml or json error: {e}")
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise InvalidArgument(details=f"Parse yaml or json error: expected a mapping, got {type(data).__name__}")
    return {str(k): "" if v is None else str(v) for k, v in data.items()}


def parse_quantity(value: str) -> Decimal:
    """
    Parse a Kubernetes resource quantity ("100Mi", "1000m", "2").

    Raises:
        InvalidArgument: If the quantity is malformed
    """
    try:
        return _k8s_parse_quantity(value)
    except (ValueError, TypeError) as e:
        raise InvalidArgument(details=f"invalid quantity {value!r}: {e}")


def escape_bash_str(value: str) -> str:
    """Quote a value for safe interpolation into a `sh -c` command line."""
    return shlex.quote(value)
