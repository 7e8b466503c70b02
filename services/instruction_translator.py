"""Instruction translator - turns a free-text instruction into cell updates.

Architecture:
- ``InstructionTranslator`` is the contract the edit session depends on
- Payload extraction tolerates prose around the model's JSON
- ``GeminiTranslator`` runs a LangGraph state machine:
  validate_input -> call_model -> parse_output
"""
from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import List, Literal, Optional, Protocol, Sequence, TypedDict

import google.generativeai as genai
from langgraph.graph import END, StateGraph
from pydantic import ValidationError

from services.errors import EmptyResult, TranslationFailure
from services.settings import Settings, get_settings
from services.sheet_engine.address import encode_cell
from services.sheet_engine.schemas import CellSnapshot, CellUpdate, SheetGrid

logger = logging.getLogger(__name__)


# Credential-like content is never sent to the model
DEFAULT_BLOCKED_PATTERNS = [
    r'\b(password|secret|api.?key|token)\s*[:=]',
    r'\b\d{3}-\d{2}-\d{4}\b',  # SSN pattern
    r'\b\d{16}\b',  # Credit card pattern
]


@dataclass
class TranslationResult:
    """Structured output of a translation."""
    updates: List[CellUpdate] = field(default_factory=list)
    explanation: str = ""


class InstructionTranslator(Protocol):
    """Anything that can translate an instruction against a cell snapshot."""

    async def translate(self, snapshot: Sequence[CellSnapshot], instruction: str) -> TranslationResult:
        ...


# ============================================================================
# SNAPSHOT AND PAYLOAD HANDLING
# ============================================================================

def build_snapshot(grid: SheetGrid, limit: Optional[int] = None) -> List[CellSnapshot]:
    """Non-empty cells (value or formula present) in row-major order."""
    snapshot: List[CellSnapshot] = []
    for row, col, cell in grid.iter_cells():
        if cell.is_empty():
            continue
        if limit is not None and len(snapshot) >= limit:
            logger.warning(f"[TRANSLATE] Snapshot capped at {limit} cells")
            break
        snapshot.append(CellSnapshot(
            address=encode_cell(row, col),
            value=cell.value,
            formula=cell.formula,
            type=cell.type,
        ))
    return snapshot


_CLOSERS = {"{": "}", "[": "]"}


def _balanced_end(text: str, start: int) -> Optional[int]:
    """Index just past the structure opened at ``start``, or None if unbalanced."""
    stack = [_CLOSERS[text[start]]]
    in_string = False
    escaped = False
    for i in range(start + 1, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch in _CLOSERS:
            stack.append(_CLOSERS[ch])
        elif ch in ("}", "]"):
            if ch != stack[-1]:
                return None
            stack.pop()
            if not stack:
                return i + 1
    return None


def _payload_rank(candidate: str) -> int:
    """How likely a bracketed candidate is the update payload (higher is better)."""
    try:
        data = json.loads(candidate)
    except json.JSONDecodeError:
        return 0
    if isinstance(data, dict) and "updates" in data:
        return 3
    if isinstance(data, list) and data and all(isinstance(item, dict) for item in data):
        return 2
    return 1


def extract_payload(text: str) -> Optional[str]:
    """Extract the outermost well-formed bracketed structure from text.

    Handles code fences and commentary around the JSON, including prose
    that contains brackets of its own. Brackets inside JSON strings do not
    count. Candidates that parse as an update payload win; when nothing
    parses, the first balanced structure is returned so the caller can
    report the decode error.
    """
    if not text:
        return None
    first = None
    best, best_rank = None, 0
    for match in re.finditer(r"[\[{]", text):
        end = _balanced_end(text, match.start())
        if end is None:
            continue
        candidate = text[match.start():end]
        if first is None:
            first = candidate
        rank = _payload_rank(candidate)
        if rank > best_rank:
            best, best_rank = candidate, rank
            if rank == 3:
                break
    return best if best is not None else first


def parse_translation(text: str) -> TranslationResult:
    """Parse a model response into updates plus explanation.

    Raises:
        TranslationFailure: No parsable structure in the response
        EmptyResult: The structure parsed but holds no usable updates
    """
    payload = extract_payload(text)
    if payload is None:
        raise TranslationFailure("Translator response contained no structured payload")
    try:
        data = json.loads(payload)
    except json.JSONDecodeError as e:
        raise TranslationFailure(f"Translator response was not valid JSON: {e}") from e

    explanation = ""
    if isinstance(data, dict):
        raw_updates = data.get("updates")
        explanation = str(data.get("explanation") or "")
    else:
        raw_updates = data
    if not isinstance(raw_updates, list):
        raw_updates = []

    updates: List[CellUpdate] = []
    for entry in raw_updates:
        if not isinstance(entry, dict):
            logger.warning(f"[TRANSLATE] Dropping non-object update: {entry!r}")
            continue
        try:
            updates.append(CellUpdate.model_validate(entry))
        except ValidationError as e:
            logger.warning(f"[TRANSLATE] Dropping invalid update {entry!r}: {e.error_count()} error(s)")

    if not updates:
        raise EmptyResult(explanation=explanation or None)
    return TranslationResult(updates=updates, explanation=explanation)


# ============================================================================
# GUARDRAILS
# ============================================================================

class Guardrails:
    """Input validation before anything reaches the model."""

    def __init__(self, max_instruction_length: int, blocked_patterns: Optional[List[str]] = None):
        self.max_instruction_length = max_instruction_length
        self.blocked_patterns = blocked_patterns or DEFAULT_BLOCKED_PATTERNS.copy()

    def validate_input(self, instruction: str) -> tuple[bool, list[str]]:
        errors = []

        if not instruction.strip():
            errors.append("Instruction is empty")

        if len(instruction) > self.max_instruction_length:
            errors.append(f"Instruction too long ({len(instruction)} > {self.max_instruction_length})")

        for pattern in self.blocked_patterns:
            if re.search(pattern, instruction, re.IGNORECASE):
                errors.append("Instruction contains blocked pattern")
                break

        return len(errors) == 0, errors


# ============================================================================
# GEMINI + LANGGRAPH
# ============================================================================

PROMPT_TEMPLATE = """You are a spreadsheet editing assistant. Translate the user's instruction into cell updates.

CURRENT NON-EMPTY CELLS (JSON, one object per cell; type is n=number, s=text, b=boolean, d=date, e=error):
{snapshot}

INSTRUCTION: {instruction}

RULES:
1. Respond with ONLY a JSON object: {{"updates": [{{"address": "A1", "value": ..., "formula": "..."}}], "explanation": "..."}}
2. Use A1-style addresses of single cells
3. Include "value" to set a value, "formula" to set a formula (without the leading '='), or both
4. Use null for "value" or "formula" to clear it
5. Only touch the cells the instruction asks for
6. If the instruction cannot be applied, return an empty "updates" list and say why in "explanation"
"""


class TranslationState(TypedDict):
    """State for the translation workflow."""
    instruction: str
    snapshot: list[dict]
    validation_passed: bool
    validation_errors: list[str]
    raw_output: str
    updates: list[CellUpdate]
    explanation: str


class GeminiTranslator:
    """Translator backed by Gemini, orchestrated with LangGraph."""

    def __init__(self, settings: Settings | None = None):
        self._settings = settings or get_settings()
        self._guardrails = Guardrails(self._settings.translator.max_instruction_length)
        self._model = None
        self._graph = None

    def _get_model(self):
        """Lazy initialization of the Gemini model."""
        if self._model is None:
            api_key = self._settings.gemini.api_key
            if not api_key:
                raise TranslationFailure("GOOGLE_API_KEY or GEMINI_API_KEY environment variable required")
            genai.configure(api_key=api_key)
            self._model = genai.GenerativeModel(
                model_name=self._settings.gemini.model_name,
                generation_config={
                    "temperature": self._settings.translator.temperature,
                    "max_output_tokens": self._settings.translator.max_output_tokens,
                    "response_mime_type": "application/json",
                },
            )
        return self._model

    def _build_graph(self):
        guardrails = self._guardrails

        def validate_input_node(state: TranslationState) -> TranslationState:
            passed, errors = guardrails.validate_input(state["instruction"])
            return {**state, "validation_passed": passed, "validation_errors": errors}

        async def call_model_node(state: TranslationState) -> TranslationState:
            prompt = PROMPT_TEMPLATE.format(
                snapshot=json.dumps(state["snapshot"], ensure_ascii=False),
                instruction=state["instruction"],
            )
            response = await self._get_model().generate_content_async(prompt)
            return {**state, "raw_output": response.text}

        def parse_output_node(state: TranslationState) -> TranslationState:
            result = parse_translation(state["raw_output"])
            return {**state, "updates": result.updates, "explanation": result.explanation}

        def should_continue(state: TranslationState) -> Literal["call", "end"]:
            if state.get("validation_passed", True):
                return "call"
            return "end"

        workflow = StateGraph(TranslationState)
        workflow.add_node("validate_input", validate_input_node)
        workflow.add_node("call_model", call_model_node)
        workflow.add_node("parse_output", parse_output_node)

        workflow.set_entry_point("validate_input")
        workflow.add_conditional_edges(
            "validate_input",
            should_continue,
            {
                "call": "call_model",
                "end": END,
            },
        )
        workflow.add_edge("call_model", "parse_output")
        workflow.add_edge("parse_output", END)
        return workflow.compile()

    async def translate(self, snapshot: Sequence[CellSnapshot], instruction: str) -> TranslationResult:
        if self._graph is None:
            self._graph = self._build_graph()

        initial_state: TranslationState = {
            "instruction": instruction,
            "snapshot": [cell.model_dump(mode="json", exclude_none=True) for cell in snapshot],
            "validation_passed": True,
            "validation_errors": [],
            "raw_output": "",
            "updates": [],
            "explanation": "",
        }

        try:
            result = await self._graph.ainvoke(initial_state)
        except (TranslationFailure, EmptyResult):
            raise
        except Exception as e:
            logger.error(f"[TRANSLATE] Gemini call failed: {e}")
            raise TranslationFailure(f"Translation failed: {e}") from e

        if not result["validation_passed"]:
            raise TranslationFailure("; ".join(result["validation_errors"]))

        logger.info(f"[TRANSLATE] {len(result['updates'])} update(s) proposed")
        return TranslationResult(updates=result["updates"], explanation=result["explanation"])


# Singleton
_translator: GeminiTranslator | None = None


def get_translator() -> InstructionTranslator:
    """Get the instruction translator singleton."""
    global _translator
    if _translator is None:
        _translator = GeminiTranslator()
    return _translator
