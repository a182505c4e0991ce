"""
Pure functions that resolve the conversation tree into a visible path.

Messages are stored flat, each pointing at its parent. Siblings sharing a
parent are alternative versions (edits of a user turn, regenerations of an
assistant turn) ordered by ``branch_index``. A selection map records which
sibling is shown at each branch point; anything not recorded shows the most
recently created version.
"""

from collections import defaultdict
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .models import Message, Selections


def group_by_parent(messages: Iterable[Message]) -> Dict[Optional[str], List[Message]]:
    """Groups messages by ``parent_id``, each group sorted by ``branch_index``.

    The sort is stable, so equal branch indexes keep the store's creation order.
    """
    children: Dict[Optional[str], List[Message]] = defaultdict(list)
    for message in messages:
        children[message.parent_id].append(message)
    for siblings in children.values():
        siblings.sort(key=lambda m: m.branch_index)
    return dict(children)


def _pick(siblings: List[Message], selected_id: Optional[str]) -> Message:
    if selected_id is not None:
        for sibling in siblings:
            if sibling.id == selected_id:
                return sibling
    return siblings[-1]


def build_visible_path(
    messages: Sequence[Message], selections: Optional[Selections] = None
) -> List[Message]:
    """Resolves the tree into the single linear sequence shown to the user.

    Parameters
    ----------
    messages : Sequence[Message]
        Every stored message of one conversation, in any order.
    selections : Selections, optional
        Parent id (None for the root) to selected child id. Missing or stale
        entries fall back to the last sibling.

    Returns
    -------
    List[Message]
        One message per tree depth, root first.
    """
    if not messages:
        return []
    selections = selections or {}
    children = group_by_parent(messages)

    path: List[Message] = []
    seen = set()
    parent_id: Optional[str] = None
    while parent_id in children:
        chosen = _pick(children[parent_id], selections.get(parent_id))
        if chosen.id in seen:
            break
        seen.add(chosen.id)
        path.append(chosen)
        parent_id = chosen.id
    return path


def default_selections(messages: Sequence[Message]) -> Selections:
    """Selects the most recent sibling at every branch point."""
    return {
        parent_id: siblings[-1].id
        for parent_id, siblings in group_by_parent(messages).items()
    }


def _ancestor_ids(by_id: Dict[str, Message], message_id: str) -> set:
    ids = set()
    current: Optional[str] = message_id
    while current is not None and current not in ids:
        ids.add(current)
        message = by_id.get(current)
        current = message.parent_id if message else None
    return ids


def build_selection_map(
    messages: Sequence[Message],
    target_id: str,
    preserve: Optional[Selections] = None,
) -> Selections:
    """Builds a selection map under which ``target_id`` is visible.

    Every branch point gets an entry. Points on the path from the root to the
    target select the path's child. Other points keep the choice recorded in
    ``preserve`` when it still names one of their children, and otherwise
    select the most recent sibling. An unknown target therefore yields the
    default map.
    """
    if not messages:
        return {}
    by_id = {m.id: m for m in messages}
    on_path = _ancestor_ids(by_id, target_id)
    preserve = preserve or {}

    selections: Selections = {}
    for parent_id, siblings in group_by_parent(messages).items():
        in_path = next((s for s in siblings if s.id in on_path), None)
        if in_path is not None:
            selections[parent_id] = in_path.id
        else:
            selections[parent_id] = _pick(siblings, preserve.get(parent_id)).id
    return selections


def ancestor_path(messages: Sequence[Message], message_id: str) -> List[Message]:
    """Returns the messages from the root down to ``message_id`` inclusive."""
    by_id = {m.id: m for m in messages}
    path: List[Message] = []
    seen = set()
    current = by_id.get(message_id)
    while current is not None and current.id not in seen:
        seen.add(current.id)
        path.append(current)
        current = by_id.get(current.parent_id) if current.parent_id else None
    path.reverse()
    return path


def sibling_versions(
    messages: Sequence[Message], message_id: str
) -> Tuple[List[Message], int]:
    """Returns the versions of a message and its position among them.

    Only siblings with the same role are versions of one another. An unknown
    message has no versions.
    """
    by_id = {m.id: m for m in messages}
    message = by_id.get(message_id)
    if message is None:
        return [], 0
    siblings = [
        s
        for s in group_by_parent(messages).get(message.parent_id, [])
        if s.role == message.role
    ]
    position = next(i for i, s in enumerate(siblings) if s.id == message_id)
    return siblings, position
