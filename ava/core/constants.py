"""Scheduling constants shared across services."""

SLOT_MINUTES = 30
DEFAULT_BOOKING_DURATION_MINUTES = 30

# External events longer than this are whole-day blocks, not showing conflicts
MAX_EXTERNAL_EVENT_HOURS = 12

# Coordinator
BOOK_MAX_ATTEMPTS = 2
MAX_SUGGESTIONS = 3
SUGGESTION_HORIZON_HOURS = 72

# Reconciliation window around "now"
RECONCILE_LOOKBACK_DAYS = 1
RECONCILE_LOOKAHEAD_DAYS = 7
SYNC_CANCELLATION_REASON = "Event removed from Outlook calendar"

# Graph
GRAPH_SCOPES = "offline_access User.Read Calendars.ReadWrite"
GRAPH_EVENT_SELECT = "id,subject,start,end,location,showAs"
GRAPH_MAX_PAGES = 20
SHOW_AS_BUSY = "busy"

# Notification topics
TOPIC_BOOKING_CREATED = "booking.created"
TOPIC_BOOKING_CHANGED = "booking.changed"
TOPIC_AVAILABILITY_CHANGED = "availability.changed"
