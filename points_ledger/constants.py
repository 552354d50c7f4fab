"""Business-rule limits and store layout shared across the ledger."""

from datetime import timedelta

# Reward entries
MAX_ENTRY_POINTS = 10_000  # BR-002
ENTRY_EDIT_WINDOW = timedelta(hours=24)  # BR-004
RECENT_ENTRY_WINDOW = timedelta(hours=1)
MAX_ENTRY_DESCRIPTION = 500

# Categories
MAX_CATEGORY_NAME = 50
MAX_CATEGORY_DESCRIPTION = 200
MAX_CUSTOM_CATEGORIES = 20  # BR-014
CATEGORY_NAME_PATTERN = r"^[A-Za-z0-9 _.\-]+$"

# Redemptions
MIN_REDEMPTION_POINTS = 100  # BR-008
MAX_REDEMPTION_POINTS = 1_000_000
MAX_NOTES_LENGTH = 500
MAX_OPTION_TITLE = 100
MAX_OPTION_DESCRIPTION = 500

# Goals
MAX_GOAL_TITLE = 100
MAX_GOAL_DESCRIPTION = 500

# Store collections
ENTRIES = "reward_entries"
CATEGORIES = "reward_categories"
REDEMPTIONS = "redemptions"
SYNC_QUEUE = "sync_queue"
SYNC_STATE = "sync_state"
SYNC_CHECKPOINTS = "sync_checkpoints"
REDEMPTION_OPTIONS = "redemption_options"

# Catalogue documents belong to the household, not to a single user
CATALOGUE_OWNER = "household"

SYNCED_COLLECTIONS = (ENTRIES, CATEGORIES, REDEMPTIONS)

DEFAULT_CATEGORIES = (
    {"id": "chores", "name": "Chores", "description": "Household jobs", "color": 0xFF4CAF50, "icon": "cleaning_services"},
    {"id": "homework", "name": "Homework", "description": "School work and reading", "color": 0xFF2196F3, "icon": "menu_book"},
    {"id": "behavior", "name": "Behavior", "description": "Kindness and good choices", "color": 0xFFFFC107, "icon": "emoji_people"},
    {"id": "bonus", "name": "Bonus", "description": "Special occasions", "color": 0xFF9C27B0, "icon": "star"},
)

DEFAULT_REDEMPTION_CATEGORIES = (
    {"id": "treats", "name": "Treats", "description": "Snacks, desserts and small surprises", "icon": "icecream", "sort_order": 1},
    {"id": "screen_time", "name": "Screen Time", "description": "Extra time for games and shows", "icon": "tv", "sort_order": 2},
    {"id": "outings", "name": "Outings", "description": "Trips, movies and days out", "icon": "local_activity", "sort_order": 3},
    {"id": "privileges", "name": "Privileges", "description": "Later bedtimes and picking dinner", "icon": "star", "sort_order": 4},
    {"id": "charity", "name": "Giving", "description": "Donate points to a good cause", "icon": "favorite", "sort_order": 5},
)
