import ulid


def new_id(prefix: str = "") -> str:
    """Sortable string id (ULID) with an optional type prefix, e.g. ``fs_01H...``."""
    return prefix + str(ulid.new())
