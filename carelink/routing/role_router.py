import re
from typing import Any

PATIENT_ROUTE = "/(tabs)"

DASHBOARD_ROUTES: dict[str, str] = {
    "admin":          "/(tabs)/admin-dashboard",
    "doctor":         "/(tabs)/doctor-dashboard",
    "pharmacist":     "/(tabs)/pharmacist-dashboard",
    "lab_technician": "/(tabs)/lab-technician-dashboard",
    # Legacy accounts were created without the separator
    "labtechnician":  "/(tabs)/lab-technician-dashboard",
}

_SEPARATORS = re.compile(r"[\s\-]+")


def normalize_role(role: Any) -> str:
    """Trim, lowercase and collapse whitespace/hyphen runs to `_`.

    Never raises: `None` and non-string values are coerced first.
    """
    text = "" if role is None else str(role)
    return _SEPARATORS.sub("_", text.strip().lower())


def route_for(role: Any) -> str:
    return DASHBOARD_ROUTES.get(normalize_role(role), PATIENT_ROUTE)
