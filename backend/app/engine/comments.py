"""
Thread depth, @mentions and reply trees for challenge comments.

Comments are stored flat with a parent pointer:
depth 0 = comment, 1 = reply, 2 = reply to a reply.
"""
import re

from ..errors import InvalidInput

MAX_DEPTH = 2
MAX_MENTIONS = 10

MENTION_RE = re.compile(r"(?<![\w@])@([A-Za-z0-9_.\-]{1,30})")


def child_depth(parent: dict | None) -> int:
    if parent is None:
        return 0
    depth = (parent.get("depth") or 0) + 1
    if depth > MAX_DEPTH:
        raise InvalidInput("Replies can only be nested two levels deep")
    return depth


def extract_mentions(text: str) -> list[str]:
    """Unique @names in order of appearance."""
    names: list[str] = []
    for m in MENTION_RE.finditer(text or ""):
        name = m.group(1).rstrip(".-")
        if name and name not in names:
            names.append(name)
    return names[:MAX_MENTIONS]


def build_thread(rows: list[dict]) -> list[dict]:
    """Flat rows -> nested comments with `replies`, oldest first at every level."""
    nodes = {r["id"]: {**r, "replies": []} for r in rows}
    roots = []
    for row in sorted(rows, key=lambda r: r.get("created_at") or ""):
        node = nodes[row["id"]]
        parent = nodes.get(row.get("parent_id")) if row.get("parent_id") else None
        if parent is not None:
            parent["replies"].append(node)
        elif not row.get("parent_id"):
            roots.append(node)
        # orphans (parent deleted) are dropped
    return roots


def collect_descendants(rows: list[dict], comment_id: str) -> list[str]:
    """comment_id plus every reply beneath it."""
    children: dict[str, list[str]] = {}
    for r in rows:
        if r.get("parent_id"):
            children.setdefault(r["parent_id"], []).append(r["id"])
    ids = [comment_id]
    i = 0
    while i < len(ids):
        ids.extend(children.get(ids[i], []))
        i += 1
    return ids
