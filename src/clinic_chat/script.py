"""Branching dialogue script: static node graph plus a pure resolver.

The graph is a plain mapping ``node_id -> DialogueNode``; traversal is a
lookup, so cycles such as "Back to Menu" are harmless.

YAML layout::

    root: start
    unknown: unknown
    nodes:
      start:
        text: "Welcome ..."
        choices:
          - {label: "Book Appointment", target: book_appt}

``choices`` entries may also be written as ``[label, target]`` pairs.
"""

from __future__ import annotations

import logging
import string
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

import yaml

from .models import ASSISTANT, Choice, Message

logger = logging.getLogger(__name__)

DEFAULT_SCRIPT = Path(__file__).resolve().parent / "data" / "script.yaml"
ROOT_NODE = "start"
UNKNOWN_NODE = "unknown"


@dataclass(frozen=True)
class DialogueNode:
    id: str
    text: str
    choices: Tuple[Choice, ...] = field(default_factory=tuple)

    def find_choice(self, label: str) -> Optional[Choice]:
        """Case-insensitive exact label match; earliest-declared choice wins."""
        wanted = (label or "").strip().casefold()
        if not wanted:
            return None
        for choice in self.choices:
            if choice.label.strip().casefold() == wanted:
                return choice
        return None


class _Defaulting(dict):
    # Leave unknown placeholders untouched instead of raising KeyError.
    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


def render_text(template: str, context: Optional[Mapping[str, Any]] = None) -> str:
    try:
        return string.Formatter().vformat(template, (), _Defaulting(context or {}))
    except (ValueError, IndexError):
        logger.debug("Unrenderable node template, using raw text: %r", template)
        return template


def _parse_choice(raw: Any, node_id: str) -> Choice:
    if isinstance(raw, Mapping):
        label = raw.get("label")
        target = raw.get("target") or raw.get("target_node_id") or raw.get("next_id")
    elif isinstance(raw, (list, tuple)) and len(raw) == 2:
        label, target = raw
    else:
        raise ValueError(f"Invalid choice in node {node_id!r}: {raw!r}")
    if not label or not target:
        raise ValueError(f"Choice in node {node_id!r} needs a label and a target")
    return Choice(label=str(label), target_node_id=str(target))


class DialogueScript:
    """Read-only dialogue graph keyed by node id."""

    def __init__(
        self,
        nodes: Mapping[str, DialogueNode],
        *,
        root: str = ROOT_NODE,
        unknown: str = UNKNOWN_NODE,
    ) -> None:
        if root not in nodes:
            raise ValueError(f"Script has no root node {root!r}")
        if unknown not in nodes:
            raise ValueError(f"Script has no fallback node {unknown!r}")
        self._nodes: Dict[str, DialogueNode] = dict(nodes)
        self.root = root
        self.unknown = unknown

        dangling = sorted(
            {c.target_node_id for n in self._nodes.values() for c in n.choices} - set(self._nodes)
        )
        if dangling:
            # Not fatal: the resolver redirects missing targets to the root.
            logger.warning("Script choices point at missing nodes: %s", ", ".join(dangling))

    # ---------- loading ----------

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "DialogueScript":
        raw_nodes = data.get("nodes")
        if not isinstance(raw_nodes, Mapping) or not raw_nodes:
            raise ValueError("Script must define a non-empty 'nodes' mapping")

        nodes: Dict[str, DialogueNode] = {}
        for node_id, body in raw_nodes.items():
            body = body or {}
            if not isinstance(body, Mapping):
                raise ValueError(f"Node {node_id!r} must be a mapping")
            choices = tuple(_parse_choice(c, str(node_id)) for c in body.get("choices") or [])
            nodes[str(node_id)] = DialogueNode(
                id=str(node_id),
                text=str(body.get("text", "")),
                choices=choices,
            )
        return cls(
            nodes,
            root=str(data.get("root", ROOT_NODE)),
            unknown=str(data.get("unknown", UNKNOWN_NODE)),
        )

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "DialogueScript":
        path_obj = Path(path)
        with path_obj.open("r", encoding="utf-8") as f:
            try:
                data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ValueError(f"Failed to parse script file {path_obj}: {e}") from e
        if not isinstance(data, Mapping):
            raise ValueError(f"Invalid script format in {path_obj}, expected dict.")
        script = cls.from_dict(data)
        logger.info("Loaded dialogue script %s (%d nodes)", path_obj, len(script))
        return script

    @classmethod
    def load_default(cls) -> "DialogueScript":
        return cls.from_yaml(DEFAULT_SCRIPT)

    # ---------- lookup ----------

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._nodes

    def get(self, node_id: Optional[str]) -> Optional[DialogueNode]:
        if node_id is None:
            return None
        return self._nodes.get(node_id)

    @property
    def root_node(self) -> DialogueNode:
        return self._nodes[self.root]

    @property
    def node_ids(self) -> List[str]:
        return list(self._nodes)


class ScriptResolver:
    """Maps (current node, user choice) to the next node.

    Pure function over the static script: no hidden state, and a missing
    id is redirected rather than raised.
    """

    def __init__(self, script: DialogueScript) -> None:
        self.script = script

    @property
    def root(self) -> str:
        return self.script.root

    def resolve(
        self,
        current_node_id: Optional[str],
        chosen_label: Optional[str] = None,
        *,
        target_id: Optional[str] = None,
    ) -> DialogueNode:
        next_id: Optional[str] = target_id or None

        if next_id is None:
            current = self.script.get(current_node_id)
            choice = current.find_choice(chosen_label or "") if current else None
            if choice is not None:
                next_id = choice.target_node_id

        if next_id is None:
            logger.debug("No choice matched %r at node %r", chosen_label, current_node_id)
            next_id = self.script.unknown

        node = self.script.get(next_id)
        if node is None:
            logger.debug("Node %r not in script, redirecting to root", next_id)
            node = self.script.root_node
        return node

    def render(self, node: DialogueNode, context: Optional[Mapping[str, Any]] = None) -> Message:
        """Build the assistant message that presents ``node``."""
        return Message(
            role=ASSISTANT,
            content=render_text(node.text, context),
            choices=list(node.choices),
        )
