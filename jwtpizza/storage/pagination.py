from __future__ import annotations


def get_offset(page: int, list_per_page: int) -> int:
    """Row offset for a 1-based page number; pages below 1 read from the start."""
    return max(int(page) - 1, 0) * int(list_per_page)


def name_pattern(name_filter: str | None) -> str:
    """Translate a ``*`` wildcard name filter into a SQL LIKE pattern."""
    if not name_filter:
        return "%"
    escaped = name_filter.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return escaped.replace("*", "%")


def matches_name(name: str, name_filter: str | None) -> bool:
    """In-process equivalent of ``name_pattern`` for the memory store."""
    if not name_filter or name_filter == "*":
        return True
    parts = name_filter.split("*")
    if len(parts) == 1:
        return name == name_filter
    if not name.startswith(parts[0]):
        return False
    position = len(parts[0])
    for middle in parts[1:-1]:
        found = name.find(middle, position)
        if found < 0:
            return False
        position = found + len(middle)
    return name.endswith(parts[-1]) and len(name) - len(parts[-1]) >= position
