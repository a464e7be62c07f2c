"""
Read-side projections over a node map snapshot.
"""

from collections import defaultdict
from typing import Any, Dict, List, Mapping, Optional

from ..core.types import CoroutineNode, CoroutineState, HierarchyStats


class TreeProjector:
    """Pure transforms from a flat snapshot to trees, stats and relations."""

    @staticmethod
    def roots(snapshot: Mapping[str, CoroutineNode]) -> List[CoroutineNode]:
        """Nodes with no parent, or whose parent is not in the snapshot."""
        return [
            node for node in snapshot.values()
            if not node.parent_id or node.parent_id not in snapshot
        ]

    @staticmethod
    def to_tree(snapshot: Mapping[str, CoroutineNode]) -> List[Dict[str, Any]]:
        """
        Group a flat snapshot into a forest by parent id.

        A node whose parent id is not in the snapshot becomes a temporary
        root marked `orphaned` instead of being dropped. Nodes caught in a
        malformed parent cycle are surfaced the same way. Sibling order
        follows snapshot order.

        Args:
            snapshot: Node map

        Returns:
            List of root tree nodes; each has 'id', 'node', 'depth',
            'orphaned' and 'children'
        """
        children_by_parent: Dict[str, List[str]] = defaultdict(list)
        tree_nodes: Dict[str, Dict[str, Any]] = {}
        root_ids: List[str] = []

        for node_id, node in snapshot.items():
            tree_nodes[node_id] = {
                'id': node_id,
                'node': node,
                'depth': 0,
                'orphaned': False,
                'children': [],
            }
            if node.parent_id and node.parent_id in snapshot and node.parent_id != node_id:
                children_by_parent[node.parent_id].append(node_id)
            else:
                tree_nodes[node_id]['orphaned'] = bool(node.parent_id)
                root_ids.append(node_id)

        visited = set()

        def attach(root_id: str) -> None:
            visited.add(root_id)
            stack = [root_id]
            while stack:
                current = tree_nodes[stack.pop()]
                for child_id in children_by_parent.get(current['id'], []):
                    if child_id in visited:
                        continue
                    visited.add(child_id)
                    child = tree_nodes[child_id]
                    child['depth'] = current['depth'] + 1
                    current['children'].append(child)
                    stack.append(child_id)

        forest = []
        for root_id in root_ids:
            attach(root_id)
            forest.append(tree_nodes[root_id])

        # Whatever is still unreached sits on a parent cycle
        for node_id in snapshot:
            if node_id not in visited:
                tree_nodes[node_id]['orphaned'] = True
                attach(node_id)
                forest.append(tree_nodes[node_id])

        return forest

    @staticmethod
    def flatten_tree(forest: List[Dict[str, Any]]) -> Dict[str, CoroutineNode]:
        """
        Flatten a projected forest back into a node map (pre-order).

        Args:
            forest: Output of to_tree

        Returns:
            Node map that projects back to the same forest
        """
        flat: Dict[str, CoroutineNode] = {}
        stack = list(reversed(forest))
        while stack:
            tree_node = stack.pop()
            flat[tree_node['id']] = tree_node['node']
            stack.extend(reversed(tree_node['children']))
        return flat

    @staticmethod
    def tree_to_dict(forest: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Convert a projected forest to nested JSON-ready dictionaries."""
        def convert(tree_node):
            data = tree_node['node'].to_dict()
            data['depth'] = tree_node['depth']
            data['orphaned'] = tree_node['orphaned']
            data['children'] = [convert(child) for child in tree_node['children']]
            return data

        return [convert(root) for root in forest]

    @staticmethod
    def depths(snapshot: Mapping[str, CoroutineNode]) -> Dict[str, int]:
        """
        Depth of every node: 0 for roots, 1 + parent depth otherwise.

        Memoized so every node is resolved once, O(n) overall. A node whose
        ancestry loops back on itself is treated as a root.
        """
        memo: Dict[str, int] = {}
        for start_id in snapshot:
            path = []
            on_path = set()
            current: Optional[str] = start_id
            base = 0
            while current is not None:
                if current in memo:
                    base = memo[current] + 1
                    break
                if current in on_path:
                    # Every node on the cycle counts as a root
                    cycle_start = path.index(current)
                    for node_id in path[cycle_start:]:
                        memo[node_id] = 0
                    path = path[:cycle_start]
                    base = 1
                    break
                path.append(current)
                on_path.add(current)
                parent_id = snapshot[current].parent_id
                if not parent_id or parent_id not in snapshot:
                    break
                current = parent_id

            # path is child -> ancestor; the last entry sits directly above `base`
            for offset, node_id in enumerate(reversed(path)):
                if node_id not in memo:
                    memo[node_id] = base + offset
        return memo

    @staticmethod
    def stats(snapshot: Mapping[str, CoroutineNode]) -> HierarchyStats:
        """
        Aggregate counts over a snapshot.

        Every state is reported (zero when absent), so the state counts
        always sum to the number of nodes. Dispatchers are keyed by name, or
        by id when no name was seen; nodes with neither are left out.

        Args:
            snapshot: Node map

        Returns:
            HierarchyStats
        """
        by_state = {state.value: 0 for state in CoroutineState}
        by_dispatcher: Dict[str, int] = defaultdict(int)
        total_active = 0
        total_suspended = 0

        for node in snapshot.values():
            by_state[node.state.value] += 1
            dispatcher = node.dispatcher_name or node.dispatcher_id
            if dispatcher:
                by_dispatcher[dispatcher] += 1
            total_active += node.active_time
            total_suspended += node.suspended_time

        depths = TreeProjector.depths(snapshot)
        total = len(snapshot)

        return {
            'total': total,
            'by_state': by_state,
            'by_dispatcher': dict(by_dispatcher),
            'max_depth': max(depths.values(), default=0),
            'avg_active_time': total_active / total if total else 0.0,
            'avg_suspended_time': total_suspended / total if total else 0.0,
        }

    @staticmethod
    def relations(snapshot: Mapping[str, CoroutineNode], coroutine_id: str) -> Dict[str, Any]:
        """
        Parent, children and siblings of one coroutine.

        Siblings share the same parent id (for roots: the other roots) and
        never include the coroutine itself.

        Args:
            snapshot: Node map
            coroutine_id: Coroutine to look up

        Returns:
            Dictionary with 'coroutine', 'parent', 'children', 'siblings' and
            'has_parent' / 'has_children' / 'has_siblings' flags
        """
        coroutine = snapshot.get(coroutine_id)
        if coroutine is None:
            return {
                'coroutine': None,
                'parent': None,
                'children': [],
                'siblings': [],
                'has_parent': False,
                'has_children': False,
                'has_siblings': False,
            }

        parent = snapshot.get(coroutine.parent_id) if coroutine.parent_id else None
        children = [n for n in snapshot.values() if n.parent_id == coroutine_id and n.id != coroutine_id]
        siblings = [
            n for n in snapshot.values()
            if n.parent_id == coroutine.parent_id and n.id != coroutine_id
        ]

        return {
            'coroutine': coroutine,
            'parent': parent,
            'children': children,
            'siblings': siblings,
            'has_parent': parent is not None,
            'has_children': bool(children),
            'has_siblings': bool(siblings),
        }

    @staticmethod
    def filter_by_scope(snapshot: Mapping[str, CoroutineNode], scope_id: Optional[str]) -> Dict[str, CoroutineNode]:
        """Nodes belonging to one scope (all nodes when scope_id is empty)."""
        if not scope_id:
            return dict(snapshot)
        return {node_id: node for node_id, node in snapshot.items() if node.scope_id == scope_id}

    @staticmethod
    def active_children_count(snapshot: Mapping[str, CoroutineNode], coroutine_id: str) -> int:
        """Number of known children of a coroutine that are not yet terminal."""
        node = snapshot.get(coroutine_id)
        if node is None:
            return 0
        return sum(
            1 for child_id in node.children
            if child_id in snapshot and not snapshot[child_id].is_terminal
        )
