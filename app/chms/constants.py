"""
Central constants for the church management application.
"""
from __future__ import annotations

PER_PAGE = 50

# Organizations
ORG_TYPES = ("church", "association", "club", "nonprofit", "other")
ORG_SIZES = ("1-50", "51-100", "101-250", "251-500", "501-1000", "1001-2000", "2000+")

# People
MEMBERSHIP_STATUSES = ("active", "inactive", "visitor")
GENDERS = ("male", "female", "other")
MARITAL_STATUSES = ("single", "married", "divorced", "widowed")

VISITOR_STATUSES = ("New", "Returning")
VISITOR_SOURCES = ("Walk-in", "Invited", "Online")

MEMBER_FOLLOWUP_METHODS = ("Phone", "Email", "Visit", "SMS", "WhatsApp", "Other")
VISITOR_FOLLOWUP_METHODS = ("Call", "In-person", "Email", "Text")

# Attendance (service_type is free text; these are the form suggestions)
SERVICE_TYPES = ("Sunday Service", "Midweek Service", "Prayer Meeting", "Special Service")
CHECKIN_STATUSES = ("present", "absent")

# Groups / departments / positions
ACTIVE_STATUSES = ("Active", "Inactive")

# Uploads
PHOTO_MAX_BYTES = 5 * 1024 * 1024
PHOTO_CONTENT_TYPES = frozenset({"image/jpeg", "image/png", "image/gif", "image/webp"})
EXCEL_CONTENT_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"

# Permission catalog: (key, display name)
PERMISSIONS: tuple[tuple[str, str], ...] = (
    ("admin.view", "Dashboard: view"),
    ("admin.edit", "Accounts: manage users"),
    ("audit.view", "Audit trail: view"),
    ("org.settings", "Organization: edit settings"),
    ("members.view", "Members: view"),
    ("members.create", "Members: create"),
    ("members.edit", "Members: edit"),
    ("members.delete", "Members: delete"),
    ("members.import", "Members: import"),
    ("members.export", "Members: export"),
    ("visitors.view", "Visitors: view"),
    ("visitors.create", "Visitors: create"),
    ("visitors.edit", "Visitors: edit"),
    ("visitors.delete", "Visitors: delete"),
    ("visitors.convert", "Visitors: convert to member"),
    ("attendance.view", "Attendance: view"),
    ("attendance.edit", "Attendance: record"),
    ("followups.view", "Follow-ups: view"),
    ("followups.edit", "Follow-ups: record"),
    ("groups.view", "Groups & departments: view"),
    ("groups.edit", "Groups & departments: edit"),
    ("birthdays.view", "Birthdays: view"),
    ("messaging.view", "Messaging: view"),
    ("messaging.send", "Messaging: send"),
    ("messaging.configure", "Messaging: configure gateway"),
    ("reports.view", "Reports: view"),
    ("reports.export", "Reports: export"),
)

_STAFF_PERMISSIONS = (
    "admin.view",
    "members.view",
    "members.create",
    "members.edit",
    "members.export",
    "visitors.view",
    "visitors.create",
    "visitors.edit",
    "attendance.view",
    "attendance.edit",
    "followups.view",
    "followups.edit",
    "groups.view",
    "groups.edit",
    "birthdays.view",
    "messaging.view",
    "reports.view",
)

_VIEWER_PERMISSIONS = tuple(k for k, _ in PERMISSIONS if k.endswith(".view") and k != "audit.view")

# role key -> (display name, permission keys)
ROLES: dict[str, tuple[str, tuple[str, ...]]] = {
    "owner": ("Owner", tuple(k for k, _ in PERMISSIONS)),
    "admin": ("Administrator", tuple(k for k, _ in PERMISSIONS if k != "org.settings")),
    "staff": ("Staff", _STAFF_PERMISSIONS),
    "viewer": ("Viewer", _VIEWER_PERMISSIONS),
}
