import logging
from dataclasses import dataclass, field
from typing import List, Dict, Any, Optional, Set

from .utils import qualify_table

ON_DELETE_ACTIONS = ("cascade", "no_action")


@dataclass
class TableNode:
    name: str
    where: str = "TRUE"
    parent: Optional[str] = None
    # True when the FK to parent is ON DELETE CASCADE.
    cascade: bool = False
    children: List[str] = field(default_factory=list)


def normalize_tables(tables: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """
    Validate the `tables` config section and fill defaults.
    Each entry: {name, where?, parent?, on_delete?}.
    """
    out = []
    seen: Set[str] = set()
    for t in tables or []:
        tt = dict(t)
        if not tt.get("name"):
            raise ValueError(f"Table entry without a name: {t}")
        tt["name"] = qualify_table(tt["name"])
        if tt["name"] in seen:
            raise ValueError(f"Table '{tt['name']}' is listed more than once.")
        seen.add(tt["name"])

        where = str(tt.get("where") or "").strip()
        tt["where"] = where or "TRUE"

        parent = tt.get("parent")
        tt["parent"] = qualify_table(parent) if parent else None

        action = str(tt.get("on_delete") or "no_action").lower().replace(" ", "_")
        if action not in ON_DELETE_ACTIONS:
            raise ValueError(f"Invalid on_delete '{tt.get('on_delete')}' for table '{tt['name']}'")
        if action == "cascade" and not tt["parent"]:
            raise ValueError(f"Table '{tt['name']}' has on_delete=cascade but no parent.")
        tt["on_delete"] = action
        out.append(tt)
    return out


def filter_tables(tables: List[Dict[str, Any]], skip_tables: Set[str]) -> List[Dict[str, Any]]:
    norm_skip = set()
    for t in (skip_tables or []):
        norm_skip.add(t)
        norm_skip.add(qualify_table(t))
    out = []
    for t in tables:
        name = t["name"]
        if name in norm_skip or name.split(".")[-1] in norm_skip:
            logging.warning(f"[SKIP] Table '{name}' skipped due to filter rules")
            continue
        out.append(t)
    return out


def build_graph(tables: List[Dict[str, Any]]) -> Dict[str, TableNode]:
    graph: Dict[str, TableNode] = {}
    for t in tables:
        graph[t["name"]] = TableNode(
            name=t["name"],
            where=t["where"],
            parent=t.get("parent"),
            cascade=t.get("on_delete") == "cascade",
        )

    for node in graph.values():
        if node.parent is None:
            continue
        if node.parent not in graph:
            logging.warning(f"[RELATION] Parent '{node.parent}' of '{node.name}' is not being deleted, ignoring relation")
            node.parent = None
            node.cascade = False
            continue
        graph[node.parent].children.append(node.name)

    for name in graph:
        path = [name]
        cur = graph[name].parent
        while cur is not None:
            if cur in path:
                raise ValueError(f"Cycle in table relations: {' -> '.join(path + [cur])}")
            path.append(cur)
            cur = graph[cur].parent
    return graph


def cascade_descendants(graph: Dict[str, TableNode], name: str) -> List[str]:
    """Tables whose rows the database removes when rows of `name` are deleted."""
    out = []
    stack = [name]
    while stack:
        for child in graph[stack.pop()].children:
            if graph[child].cascade:
                out.append(child)
                stack.append(child)
    return out


def blocking_children(graph: Dict[str, TableNode], name: str) -> List[str]:
    """Children that must be empty before rows of `name` can be deleted."""
    return [c for c in graph[name].children if not graph[c].cascade]


def deletion_order(graph: Dict[str, TableNode]) -> List[str]:
    """Every table after all of its children; ties keep config order."""
    order: List[str] = []
    done: Set[str] = set()

    def visit(name: str) -> None:
        if name in done:
            return
        for child in graph[name].children:
            visit(child)
        done.add(name)
        order.append(name)

    for name in graph:
        visit(name)
    return order
