from __future__ import annotations

TICKET_STATUS_PENDING = "PENDING"
TICKET_STATUS_PROCESSING = "PROCESSING"
TICKET_STATUS_TRIAGED = "TRIAGED"
TICKET_STATUS_RESOLVED = "RESOLVED"
TICKET_STATUS_FAILED = "FAILED"

CATEGORY_UNCATEGORIZED = "UNCATEGORIZED"

JOB_STATUS_PENDING = "pending"
JOB_STATUS_ACTIVE = "active"
JOB_STATUS_COMPLETED = "completed"
JOB_STATUS_FAILED = "failed"

JOB_KIND_TRIAGE = "triage"

TICKET_SORT_FIELDS = ("created_at", "updated_at", "urgency", "sentiment_score")
TICKET_GROUP_FIELDS = ("status", "urgency", "category")

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100

ERROR_SNIPPET_LENGTH = 200

# Written together or not at all.
TRIAGE_FIELDS = ("category", "urgency", "sentiment_score", "ai_draft")
