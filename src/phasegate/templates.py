"""Workflow templates: built-in loops and JSON template loading."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from .errors import InvalidTemplate
from .models import ApprovalType, GateTemplate, JumpEdge, PhaseTemplate, UnitTemplate, WorkflowTemplate

logger = logging.getLogger(__name__)

MODES = ["greenfield", "brownfield-polish", "brownfield-enterprise"]


def _units(*unit_ids: str, modes: list[str] | None = None) -> list[UnitTemplate]:
    return [UnitTemplate(unit_id=unit_id, deliverables=[f"{unit_id}.md"], modes=modes or []) for unit_id in unit_ids]


ENGINEERING_LOOP = WorkflowTemplate(
    template_id="engineering-loop",
    name="Engineering Loop",
    version="2.0.0",
    description="Spec to shipped module with human spec/architecture review and automated verification.",
    modes=MODES,
    default_mode="greenfield",
    phases=[
        PhaseTemplate(
            phase_id="INIT",
            units=_units("requirements", "spec"),
            gate=GateTemplate(gate_id="spec-gate", deliverables=["spec.md"]),
        ),
        PhaseTemplate(
            phase_id="SCAFFOLD",
            units=_units("architect", "scaffold")
            + _units("codebase-audit", modes=["brownfield-polish", "brownfield-enterprise"]),
            gate=GateTemplate(gate_id="architecture-gate", deliverables=["architect.md"]),
        ),
        PhaseTemplate(phase_id="IMPLEMENT", units=_units("implement")),
        PhaseTemplate(
            phase_id="TEST",
            units=_units("test-generation"),
            gate=GateTemplate(
                gate_id="test-gate",
                approval_type=ApprovalType.AUTO,
                signals=["tests_pass", "build_ok"],
            ),
        ),
        PhaseTemplate(
            phase_id="VERIFY",
            units=_units("code-verification", "security-audit")
            + _units("compliance-review", modes=["brownfield-enterprise"]),
            gate=GateTemplate(
                gate_id="verification-gate",
                approval_type=ApprovalType.CONDITIONAL,
                signals=["lint_clean", "tests_pass"],
            ),
        ),
        PhaseTemplate(phase_id="DOCUMENT", units=_units("document")),
        PhaseTemplate(
            phase_id="REVIEW",
            units=_units("code-review"),
            gate=GateTemplate(gate_id="review-gate", required=False, deliverables=["code-review.md"]),
        ),
        PhaseTemplate(
            phase_id="SHIP",
            units=_units("deploy"),
            gate=GateTemplate(gate_id="deploy-gate", deliverables=["deploy.md"]),
        ),
        PhaseTemplate(phase_id="COMPLETE", units=_units("retrospective")),
    ],
    jump_edges=[
        JumpEdge(from_phase="TEST", to_phase="IMPLEMENT"),
        JumpEdge(from_phase="VERIFY", to_phase="IMPLEMENT"),
        JumpEdge(from_phase="REVIEW", to_phase="IMPLEMENT"),
    ],
)

BUGFIX_LOOP = WorkflowTemplate(
    template_id="bugfix-loop",
    name="Bugfix Loop",
    version="1.1.0",
    description="Reproduce, fix, and verify a defect.",
    modes=["brownfield-polish", "brownfield-enterprise"],
    default_mode="brownfield-polish",
    phases=[
        PhaseTemplate(
            phase_id="INIT",
            units=_units("triage", "reproduce"),
            gate=GateTemplate(gate_id="triage-gate", required=False),
        ),
        PhaseTemplate(phase_id="IMPLEMENT", units=_units("fix")),
        PhaseTemplate(
            phase_id="VERIFY",
            units=_units("regression-test"),
            gate=GateTemplate(
                gate_id="verify-gate",
                approval_type=ApprovalType.AUTO,
                signals=["tests_pass"],
            ),
        ),
        PhaseTemplate(phase_id="COMPLETE", units=_units("postmortem")),
    ],
    jump_edges=[JumpEdge(from_phase="VERIFY", to_phase="IMPLEMENT")],
)

BUILTIN_TEMPLATES: dict[str, WorkflowTemplate] = {
    ENGINEERING_LOOP.template_id: ENGINEERING_LOOP,
    BUGFIX_LOOP.template_id: BUGFIX_LOOP,
}


def _nest_flat_gates(payload: dict[str, Any]) -> dict[str, Any]:
    """Accept loop configs that list gates separately with ``after_phase``.

    Each gate is moved onto the phase it follows; a phase may own one gate.
    """
    gates = payload.pop("gates", None)
    if not gates:
        return payload
    phases = {phase.get("phase_id"): phase for phase in payload.get("phases", []) if isinstance(phase, dict)}
    for gate in gates:
        after_phase = gate.pop("after_phase", None)
        if after_phase not in phases:
            raise InvalidTemplate(f"Gate {gate.get('gate_id')} references non-existent phase: {after_phase}")
        if phases[after_phase].get("gate") is not None:
            raise InvalidTemplate(f"Phase {after_phase} already has a gate")
        phases[after_phase]["gate"] = gate
    return payload


def parse_template(text: str) -> WorkflowTemplate:
    """Parse and validate a JSON workflow template.

    Raises:
        InvalidTemplate: If the JSON is malformed or fails validation.
    """
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        raise InvalidTemplate(f"template is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise InvalidTemplate("template must be a JSON object")
    payload = _nest_flat_gates(payload)
    try:
        return WorkflowTemplate.model_validate(payload)
    except ValidationError as exc:
        raise InvalidTemplate(f"template failed validation: {exc}") from exc


def load_template(path: Path) -> WorkflowTemplate:
    if not path.is_file():
        raise InvalidTemplate(f"template file not found: {path}")
    return parse_template(path.read_text(encoding="utf-8"))


class TemplateRegistry:
    """Lookup of workflow templates by id, seeded with the built-in loops."""

    def __init__(self, templates: dict[str, WorkflowTemplate] | None = None) -> None:
        self._templates = dict(BUILTIN_TEMPLATES if templates is None else templates)

    def register(self, template: WorkflowTemplate) -> None:
        if template.template_id in self._templates:
            logger.info("Replacing template %s", template.template_id)
        self._templates[template.template_id] = template

    def register_directory(self, directory: Path) -> int:
        count = 0
        for path in sorted(directory.glob("*.json")):
            self.register(load_template(path))
            count += 1
        return count

    def get(self, template_id: str) -> WorkflowTemplate:
        try:
            return self._templates[template_id]
        except KeyError:
            raise InvalidTemplate(f"Unknown template: {template_id}") from None

    def list_ids(self) -> list[str]:
        return sorted(self._templates)
