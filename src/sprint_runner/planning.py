from __future__ import annotations

from sprint_runner.errors import PlanValidationError
from sprint_runner.models import SprintIssue


def _adjacency(issues: list[SprintIssue]) -> dict[int, list[int]]:
    known = {issue.number for issue in issues}
    return {
        issue.number: [dep for dep in issue.depends_on if dep in known] for issue in issues
    }


def detect_cycles(issues: list[SprintIssue]) -> list[list[int]]:
    adjacency = _adjacency(issues)
    visited: set[int] = set()
    on_stack: set[int] = set()
    cycles: list[list[int]] = []

    def visit(node: int, path: list[int]) -> None:
        if node in on_stack:
            cycles.append(path[path.index(node):])
            return
        if node in visited:
            return
        visited.add(node)
        on_stack.add(node)
        path.append(node)
        for dep in adjacency.get(node, []):
            visit(dep, path)
        path.pop()
        on_stack.discard(node)

    for issue in issues:
        if issue.number not in visited:
            visit(issue.number, [])
    return cycles


def missing_dependencies(issues: list[SprintIssue]) -> list[tuple[int, int]]:
    """(issue, dependency) pairs whose dependency is not part of the sprint."""
    known = {issue.number for issue in issues}
    return [
        (issue.number, dep) for issue in issues for dep in issue.depends_on if dep not in known
    ]


def build_execution_groups(issues: list[SprintIssue]) -> list[list[SprintIssue]]:
    """Group issues by dependency depth; each group only depends on earlier groups."""
    if not issues:
        return []
    cycles = detect_cycles(issues)
    if cycles:
        detail = "; ".join(
            " -> ".join(str(node) for node in [*cycle, cycle[0]]) for cycle in cycles
        )
        raise PlanValidationError(
            f"Circular dependencies detected: {detail}. Fix depends_on in the sprint plan."
        )

    adjacency = _adjacency(issues)
    depth: dict[int, int] = {}

    def depth_of(node: int) -> int:
        if node not in depth:
            deps = adjacency.get(node, [])
            depth[node] = 1 + max(depth_of(dep) for dep in deps) if deps else 0
        return depth[node]

    by_level: dict[int, list[SprintIssue]] = {}
    for issue in issues:
        by_level.setdefault(depth_of(issue.number), []).append(issue)
    return [
        sorted(by_level[level], key=lambda issue: issue.number) for level in sorted(by_level)
    ]
