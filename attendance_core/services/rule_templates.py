from __future__ import annotations

from typing import Any

BUILTIN_TEMPLATES: list[dict[str, Any]] = [
    {
        "name": "default",
        "description": "Baseline template with no overrides.",
        "is_default": True,
        "rules": [],
    },
    {
        "name": "driver_rest_overtime",
        "description": "Drivers punching on a rest shift are paid the day as overtime.",
        "scope": {"role_tags": ["driver"]},
        "rules": [
            {
                "id": "driver-rest-overtime",
                "when": {"shift_contains": "rest", "has_punch": True},
                "then": {
                    "set": {"overtime_hours": 8},
                    "warn": "Driver rest-day punch counted as overtime",
                },
            }
        ],
    },
    {
        "name": "driver_default_hours",
        "description": "Drivers get a fixed eight hour day on working days.",
        "scope": {"role_tags": ["driver"]},
        "rules": [
            {
                "id": "driver-default-8h",
                "when": {"is_workday": True},
                "then": {
                    "set": {"actual_hours": 8, "required_hours": 8},
                    "warn": "Driver default 8 hours applied",
                },
            }
        ],
    },
    {
        "name": "security_default_hours",
        "description": "Security staff get a fixed eight hour day.",
        "rules": [
            {
                "id": "security-default-8h",
                "when": {
                    "any": [
                        {"role": "security"},
                        {"attendance_group_contains": "security"},
                    ]
                },
                "then": {
                    "set": {"actual_hours": 8, "required_hours": 8},
                    "warn": "Security default 8 hours applied",
                },
            }
        ],
    },
    {
        "name": "security_holiday_overtime",
        "description": "Security staff punching on a holiday are paid the day as overtime.",
        "rules": [
            {
                "id": "security-holiday-overtime",
                "when": {
                    "is_holiday": True,
                    "has_punch": True,
                    "any": [
                        {"role": "security"},
                        {"attendance_group_contains": "security"},
                    ],
                },
                "then": {
                    "set": {"overtime_hours": 8},
                    "warn": "Security holiday overtime applied",
                },
            }
        ],
    },
    {
        "name": "rest_shift_trip_overtime",
        "description": "Business trips approved on a rest shift count as overtime.",
        "rules": [
            {
                "id": "rest-shift-trip-overtime",
                "when": {"shift_contains": "rest", "approval_contains": "trip"},
                "then": {
                    "set": {"overtime_hours": 8},
                    "reason": "Business trip on rest shift",
                },
            }
        ],
    },
]


def list_builtin_templates() -> list[dict[str, Any]]:
    return [
        {"name": item["name"], "description": item.get("description"), "rule_count": len(item["rules"])}
        for item in BUILTIN_TEMPLATES
    ]
