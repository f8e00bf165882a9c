"""
Update Configuration Validator
Validates update.yaml configuration file using cerberus schema validation.
Can be used standalone or imported by update_all.py.
"""
import yaml
from cerberus import Validator
from pathlib import Path

DEFAULT_MARKERS = {
    "update": ["All packages are up to date"],
    "upgrade": ["0 upgraded, 0 newly installed", "Nothing for Nala to do"],
    "full_upgrade": ["0 upgraded, 0 newly installed", "Nothing for Nala to do"],
    "autoremove": ["0 to remove", "Nothing for Nala to remove"],
    "autoclean": [],
    "snap": ["All snaps up to date"],
    "flatpak": ["Nothing to do"],
    "firmware": ["No detected", "No updates available"],
}

_phrases = {"type": "list", "schema": {"type": "string", "empty": False}}

# Schema definition for update configuration
CONFIG_SCHEMA = {
    "apt": {
        "type": "dict",
        "schema": {
            "preferred": {"type": "string", "empty": False, "default": "nala"},
            "fallback": {"type": "string", "empty": False, "default": "apt-get"},
        },
    },
    "tools": {
        "type": "dict",
        "schema": {
            "timeshift": {"type": "string", "empty": False, "default": "timeshift"},
            "snap": {"type": "string", "empty": False, "default": "snap"},
            "flatpak": {"type": "string", "empty": False, "default": "flatpak"},
            "fwupd": {"type": "string", "empty": False, "default": "fwupdmgr"},
        },
    },
    "install_packages": {
        "type": "dict",
        "keysrules": {"type": "string"},
        "valuesrules": {"type": "string", "empty": False},
    },
    "backup": {
        "type": "dict",
        "schema": {
            "enabled": {"type": "boolean", "default": True},
            "required": {"type": "boolean", "default": False},
            "comment": {"type": "string", "empty": False, "default": "Backup before system update"},
        },
    },
    "network": {
        "type": "dict",
        "schema": {
            "host": {"type": "string", "empty": False, "default": "google.com"},
            "timeout": {"type": "integer", "min": 1, "default": 10},
        },
    },
    "disk": {
        "type": "dict",
        "schema": {
            "path": {"type": "string", "empty": False, "default": "/"},
            "min_free_kib": {"type": "integer", "min": 0, "default": 2097152},
        },
    },
    "markers": {
        "type": "dict",
        "schema": {
            step: dict(_phrases, default=list(phrases))
            for step, phrases in DEFAULT_MARKERS.items()
        },
    },
    "strict_exit_codes": {"type": "boolean", "default": False},
    "color": {
        "type": "dict",
        "schema": {
            "console": {"type": "boolean", "default": True},
            "log_file": {"type": "boolean", "default": True},
        },
    },
    "schedule": {
        "type": "dict",
        "schema": {
            "unit": {"type": "string", "allowed": ["hours", "days", "weeks"], "required": True},
            "every": {"type": "integer", "min": 1, "default": 1},
            "at": {
                "type": "string",
                "regex": r"^(\d{2}:\d{2}|:\d{2})$",
                "nullable": True,
                "default": None,
            },
            "day": {
                "type": "string",
                "allowed": ["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"],
                "nullable": True,
                "default": None,
            },
        },
        "default": {"unit": "weeks", "every": 1, "day": "sunday", "at": "03:00"},
    },
}

# Sections whose nested defaults are filled in when the section is absent
SECTIONS = ["apt", "tools", "install_packages", "backup", "network", "disk", "markers", "color"]

DEFAULT_INSTALL_PACKAGES = {"snap": "snapd", "fwupdmgr": "fwupd"}


def validate_schedule_fields(schedule):
    """
    Validate that schedule fields are appropriate for the unit type.

    Args:
        schedule: Schedule dictionary as written in the config file

    Returns:
        list: List of error messages (empty if all valid)
    """
    errors = []
    unit = schedule.get("unit")

    if unit not in ("hours", "days", "weeks"):
        return errors  # Schema validation will catch this

    if unit != "weeks" and schedule.get("day"):
        errors.append(f"schedule: field 'day' is not used for '{unit}' schedules")

    if unit == "weeks" and schedule.get("day") and schedule.get("every", 1) != 1:
        errors.append("schedule: 'day' requires 'every: 1'")

    if unit == "hours" and schedule.get("at") and not schedule["at"].startswith(":"):
        errors.append("schedule: 'at' must be ':MM' for 'hours' schedules")

    return errors


def normalize_config(data, strict=True):
    """
    Validate a configuration mapping and fill in defaults.

    Args:
        data: Parsed configuration dictionary (None is treated as empty)
        strict: If True, reject schedule fields irrelevant for the unit

    Returns:
        dict: Normalized configuration

    Raises:
        ValueError: If the configuration doesn't match the schema
    """
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ValueError("Configuration must be a mapping")

    data = dict(data)
    for section in SECTIONS:
        if data.get(section) is None:
            data[section] = {}
    if data.get("schedule", {}) is None:
        del data["schedule"]

    validator = Validator(CONFIG_SCHEMA)
    if not validator.validate(data):
        raise ValueError(f"Invalid configuration:\n{validator.errors}")

    # Additional strict validation for field relevance
    if strict and isinstance(data.get("schedule"), dict):
        field_errors = validate_schedule_fields(data["schedule"])
        if field_errors:
            raise ValueError("Invalid configuration:\n" + "\n".join(field_errors))

    settings = validator.document
    settings["install_packages"] = {**DEFAULT_INSTALL_PACKAGES, **settings["install_packages"]}
    return settings


def validate_config(config_path="update.yaml", strict=True):
    """
    Validate update configuration file.

    Args:
        config_path: Path to update.yaml file (string or Path)
        strict: If True, reject irrelevant schedule fields

    Returns:
        dict: Validated configuration data with defaults applied

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML syntax is invalid
        ValueError: If config doesn't match schema
    """
    config_path = Path(config_path)

    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path) as f:
        data = yaml.safe_load(f)

    if data is not None and not isinstance(data, dict):
        raise ValueError("Configuration file must contain a mapping")

    return normalize_config(data, strict=strict)


def validate_and_print(config_path="update.yaml", strict=True):
    """
    Validate configuration and print result (for CLI usage).

    Args:
        config_path: Path to update.yaml file
        strict: If True, reject irrelevant fields

    Returns:
        dict: Validated configuration data, or None if invalid
    """
    try:
        data = validate_config(config_path, strict=strict)
        print(f"[OK] YAML config is valid. (APT frontend: {data['apt']['preferred']}, "
              f"fallback: {data['apt']['fallback']})")
        return data
    except FileNotFoundError as e:
        print(f"[ERROR] {e}")
        return None
    except yaml.YAMLError as e:
        print(f"[ERROR] YAML syntax error: {e}")
        return None
    except ValueError as e:
        print(f"[ERROR] {e}")
        return None


# CLI entry point
if __name__ == "__main__":
    import sys
    config_file = sys.argv[1] if len(sys.argv) > 1 else "update.yaml"
    result = validate_and_print(config_file)
    sys.exit(0 if result else 1)
