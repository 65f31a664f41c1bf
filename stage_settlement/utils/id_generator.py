"""
Opaque identifier factory, namespaced by record kind.
"""
import uuid

# Record kind -> identifier prefix
PREFIXES = {
    "settlement": "settle",
    "group_detail": "std",
    "comment_detail": "cst",
    "transaction": "txn",
    "operation_log": "log",
    "stage": "stg",
    "project": "proj",
    "group": "grp",
    "submission": "sub",
    "proposal": "prop",
    "comment": "cmt",
}


def generate_id(kind: str) -> str:
    """Return a collision-resistant id such as ``settle_3f2a...``."""
    prefix = PREFIXES.get(kind, kind)
    return f"{prefix}_{uuid.uuid4().hex}"
