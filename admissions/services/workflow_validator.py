"""
Admissions Workflow Platform
Workflow Validator — structural checks on a workflow graph.

Runs before activation (and on demand from the editor). Collects every
issue instead of stopping at the first, so the editor can show them all.

Checks:
    NO_STAGES                  workflow has no stages
    NO_ENTRY_STAGE             every stage has an incoming transition
    MULTIPLE_ENTRY_STAGES      more than one stage without incoming transitions
    ORPHAN_STAGE               non-entry stage without incoming transitions
    NO_TERMINAL_STAGE          every stage has an outgoing transition
    UNREACHABLE_STAGE          stage cannot be reached from the entry stage
    NO_PATH_TO_TERMINAL        stage cannot reach any terminal stage
    DUPLICATE_TRANSITION_NAME  two transitions with the same name leave one stage
    CROSS_WORKFLOW_TRANSITION  transition endpoint outside this workflow
    SELF_LOOP_NOT_REVISION     source == target without ``is_revision``
    INVALID_CONDITION          condition entry cannot be decoded
    UNKNOWN_PERMISSION         required permission not in the catalogue
    DUPLICATE_SEQUENCE         two stages share a sequence number

Revision self-loops never count as incoming or reachability edges.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field

from admissions.services.condition_evaluator import ConditionParseError, parse_conditions


@dataclass
class WorkflowGraph:
    """A workflow with its stages and transitions, loaded together."""

    workflow: object
    stages: list = field(default_factory=list)
    transitions: list = field(default_factory=list)

    def stage(self, stage_id):
        for s in self.stages:
            if s.id == stage_id:
                return s
        return None

    def transition(self, transition_id):
        for t in self.transitions:
            if t.id == transition_id:
                return t
        return None

    def outgoing(self, stage_id) -> list:
        return [t for t in self.transitions if t.source_stage_id == stage_id]

    def incoming(self, stage_id) -> list:
        return [
            t for t in self.transitions
            if t.target_stage_id == stage_id and t.source_stage_id != stage_id
        ]

    def is_terminal(self, stage_id) -> bool:
        return not self.outgoing(stage_id)

    def entry_candidates(self) -> list:
        """Stages without incoming transitions, in (sequence, id) order."""
        cands = [s for s in self.stages if not self.incoming(s.id)]
        return sorted(cands, key=lambda s: (s.sequence or 0, s.id or 0))

    def entry_stage(self):
        """The single entry stage, or None when there are zero or several."""
        cands = self.entry_candidates()
        return cands[0] if len(cands) == 1 else None

    def terminal_stages(self) -> list:
        return [s for s in self.stages if self.is_terminal(s.id)]


@dataclass(frozen=True)
class ValidationIssue:
    code: str
    message: str
    stage_id: int | None = None
    transition_id: int | None = None

    def to_dict(self) -> dict:
        return {
            "code": self.code,
            "message": self.message,
            "stage_id": self.stage_id,
            "transition_id": self.transition_id,
        }


def validate(graph: WorkflowGraph, known_permissions=None) -> list[ValidationIssue]:
    """
    Validate *graph* and return every issue found (empty list = valid).

    *known_permissions*: catalogue of permission codenames. ``None`` skips
    the permission reference check.
    """
    issues: list[ValidationIssue] = []
    stages = list(graph.stages)
    transitions = list(graph.transitions)

    if not stages:
        issues.append(ValidationIssue("NO_STAGES", "Workflow has no stages"))

    stage_ids = {s.id for s in stages}
    workflow_id = getattr(graph.workflow, "id", None)

    # ── Transition-level checks ──────────────────────────────────────────
    seen_names: dict[tuple, int] = {}
    for t in transitions:
        foreign = (
            t.source_stage_id not in stage_ids
            or t.target_stage_id not in stage_ids
            or (workflow_id is not None and t.workflow_id not in (None, workflow_id))
        )
        if foreign:
            issues.append(ValidationIssue(
                "CROSS_WORKFLOW_TRANSITION",
                f"Transition '{t.name}' connects stages outside this workflow",
                transition_id=t.id,
            ))
        if t.source_stage_id == t.target_stage_id and not t.is_revision:
            issues.append(ValidationIssue(
                "SELF_LOOP_NOT_REVISION",
                f"Transition '{t.name}' loops on its own stage but is not marked as a revision",
                stage_id=t.source_stage_id, transition_id=t.id,
            ))

        key = (t.source_stage_id, (t.name or "").strip().lower())
        if key in seen_names:
            issues.append(ValidationIssue(
                "DUPLICATE_TRANSITION_NAME",
                f"Duplicate transition name '{t.name}' from the same stage",
                stage_id=t.source_stage_id, transition_id=t.id,
            ))
        else:
            seen_names[key] = t.id

        try:
            parse_conditions(t.transition_conditions)
        except ConditionParseError as exc:
            issues.append(ValidationIssue(
                "INVALID_CONDITION",
                f"Transition '{t.name}': {exc}",
                transition_id=t.id,
            ))

        if known_permissions is not None:
            for codename in t.required_permissions or []:
                if codename not in known_permissions:
                    issues.append(ValidationIssue(
                        "UNKNOWN_PERMISSION",
                        f"Transition '{t.name}' requires unknown permission '{codename}'",
                        transition_id=t.id,
                    ))

    # ── Stage-level checks ───────────────────────────────────────────────
    seen_seq: dict[int, int] = {}
    for s in sorted(stages, key=lambda s: s.id or 0):
        if s.sequence in seen_seq:
            issues.append(ValidationIssue(
                "DUPLICATE_SEQUENCE",
                f"Stage '{s.name}' reuses sequence {s.sequence}",
                stage_id=s.id,
            ))
        else:
            seen_seq[s.sequence] = s.id

    if not stages:
        return issues

    internal = [
        t for t in transitions
        if t.source_stage_id in stage_ids and t.target_stage_id in stage_ids
    ]
    scoped = WorkflowGraph(graph.workflow, stages, internal)

    candidates = scoped.entry_candidates()
    entry = candidates[0] if candidates else None
    if not candidates:
        issues.append(ValidationIssue(
            "NO_ENTRY_STAGE", "Every stage has an incoming transition; no entry stage",
        ))
    elif len(candidates) > 1:
        issues.append(ValidationIssue(
            "MULTIPLE_ENTRY_STAGES",
            "Several stages have no incoming transitions: "
            + ", ".join(f"'{s.name}'" for s in candidates),
        ))
        for s in candidates[1:]:
            issues.append(ValidationIssue(
                "ORPHAN_STAGE", f"Stage '{s.name}' has no incoming transitions", stage_id=s.id,
            ))

    terminals = scoped.terminal_stages()
    if not terminals:
        issues.append(ValidationIssue(
            "NO_TERMINAL_STAGE", "Every stage has an outgoing transition; no terminal stage",
        ))

    forward: dict = {s.id: set() for s in stages}
    backward: dict = {s.id: set() for s in stages}
    for t in internal:
        if t.source_stage_id == t.target_stage_id:
            continue
        forward[t.source_stage_id].add(t.target_stage_id)
        backward[t.target_stage_id].add(t.source_stage_id)

    if entry is not None:
        reachable = _walk(entry.id, forward)
        for s in stages:
            if s.id not in reachable and s not in candidates:
                issues.append(ValidationIssue(
                    "UNREACHABLE_STAGE",
                    f"Stage '{s.name}' cannot be reached from entry stage '{entry.name}'",
                    stage_id=s.id,
                ))

    if terminals:
        can_finish: set = set()
        for term in terminals:
            can_finish |= _walk(term.id, backward)
        for s in stages:
            if s.id not in can_finish:
                issues.append(ValidationIssue(
                    "NO_PATH_TO_TERMINAL",
                    f"Stage '{s.name}' cannot reach a terminal stage",
                    stage_id=s.id,
                ))

    return issues


def _walk(start, edges: dict) -> set:
    seen = {start}
    queue = deque([start])
    while queue:
        node = queue.popleft()
        for nxt in edges.get(node, ()):
            if nxt not in seen:
                seen.add(nxt)
                queue.append(nxt)
    return seen
