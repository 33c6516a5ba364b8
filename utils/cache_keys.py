from __future__ import annotations
from models.user import UserListQuery

RECORD_KEY_PREFIX = "user:"
LIST_KEY_PREFIX = "all_users"

DEFAULT_PAGE = 1
DEFAULT_LIMIT = 20
MAX_LIMIT = 100
SORT_FIELDS = ("createdAt", "username", "email")
SORT_ORDERS = ("asc", "desc")
DEFAULT_SORT = "createdAt"
DEFAULT_ORDER = "desc"


def normalize_list_query(query: UserListQuery) -> UserListQuery:
    """Clamp paging and fall back to defaults so equal queries compare equal."""
    search = (query.search or "").strip().lower() or None
    return UserListQuery(
        page=max(DEFAULT_PAGE, query.page),
        limit=min(max(1, query.limit), MAX_LIMIT),
        sort=query.sort if query.sort in SORT_FIELDS else DEFAULT_SORT,
        order=query.order if query.order in SORT_ORDERS else DEFAULT_ORDER,
        role=query.role,
        search=search,
    )


def build_list_key(query: UserListQuery, generation: int = 0) -> str:
    q = normalize_list_query(query)
    role = q.role.value if q.role else "all"
    # "q=" keeps a literal search for "none" apart from the no-search sentinel
    search = f"q={q.search}" if q.search else "none"
    return f"{LIST_KEY_PREFIX}:v{generation}:{q.page}:{q.limit}:{q.sort}:{q.order}:{role}:{search}"


def build_record_key(username: str) -> str:
    return f"{RECORD_KEY_PREFIX}{username}"
