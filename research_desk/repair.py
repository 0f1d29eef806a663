"""
Recover structured JSON from generative output and fill required gaps.

Extraction is strict (no JSON object means a hard failure); repair is
lenient (an incomplete object gets labelled placeholders, never invented
figures).
"""

import copy
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from research_desk.errors import MalformedResponseError


logger = logging.getLogger(__name__)

PLACEHOLDER_TEMPLATE = "[Unavailable: {field} was not provided by the generator]"


def placeholder(field_name: str) -> str:
    return PLACEHOLDER_TEMPLATE.format(field=field_name)


def _balanced_object_end(text: str, start: int) -> Optional[int]:
    """
    Index just past the '}' that closes the '{' at `start`, or None.

    Braces inside JSON strings (including escaped quotes) are ignored.
    """
    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
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
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return i + 1
    return None


def extract_first_json_object(text: str) -> Dict[str, Any]:
    """
    Pull the first JSON object out of free-form generator output.

    The whole text is tried first; otherwise each '{' is scanned for its
    balanced closing brace and the candidate parsed. Code fences and
    surrounding prose are skipped naturally.

    Args:
        text: Raw completion text

    Returns:
        The parsed object

    Raises:
        MalformedResponseError: If no parseable JSON object is present
    """
    if not text or not text.strip():
        raise MalformedResponseError("Generator returned empty output", raw_text=text or "")

    try:
        parsed = json.loads(text.strip())
        if isinstance(parsed, dict):
            return parsed
    except ValueError:
        pass

    start = text.find("{")
    while start != -1:
        end = _balanced_object_end(text, start)
        if end is None:
            start = text.find("{", start + 1)
            continue
        try:
            parsed = json.loads(text[start:end])
            if isinstance(parsed, dict):
                return parsed
        except ValueError:
            logger.debug(f"Candidate at offset {start} is not valid JSON")
        start = text.find("{", start + 1)

    logger.error(f"No JSON object found in generator output: {text[:200]!r}")
    raise MalformedResponseError("Could not extract a JSON object from generator output", raw_text=text)


def is_missing(value: Any) -> bool:
    """None, blank strings and empty containers all count as missing."""
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, dict, tuple)):
        return len(value) == 0
    return False


@dataclass(frozen=True)
class ShapeContract:
    """
    The minimal shape a generated object must have.

    Attributes:
        name: Contract name, used in logs
        required_fields: Top-level fields that must be present and non-empty
        list_fields: Required fields whose value is a list of strings
        nested_fields: Required object fields and their required children
        required_sections: Section titles that must appear in "sections"
    """

    name: str
    required_fields: Tuple[str, ...]
    list_fields: Tuple[str, ...] = ()
    nested_fields: Dict[str, Tuple[str, ...]] = field(default_factory=dict)
    required_sections: Tuple[str, ...] = ()


@dataclass
class RepairOutcome:
    data: Dict[str, Any]
    repaired_fields: List[str] = field(default_factory=list)

    @property
    def was_repaired(self) -> bool:
        return bool(self.repaired_fields)


class ResponseRepairer:
    """
    Fills missing required fields of a parsed object against a ShapeContract.

    Never mutates its input, and repairing an already-complete object (or
    a previously repaired one) changes nothing.
    """

    def repair(
        self,
        obj: Dict[str, Any],
        contract: ShapeContract,
        known: Optional[Dict[str, Any]] = None
    ) -> RepairOutcome:
        """
        Repair `obj` against `contract`.

        Args:
            obj: Parsed generator output
            contract: Required shape
            known: Values the caller already knows (symbol, companyName,
                currentPrice, ...) used instead of a placeholder

        Returns:
            RepairOutcome with the repaired copy and the repaired field paths

        Raises:
            MalformedResponseError: If obj is not a JSON object
        """
        if not isinstance(obj, dict):
            raise MalformedResponseError(
                f"{contract.name} output must be a JSON object, got {type(obj).__name__}"
            )

        known = known or {}
        data = copy.deepcopy(obj)
        repaired: List[str] = []

        for name in contract.required_fields:
            if name == "sections" or name in contract.nested_fields:
                continue
            if not is_missing(data.get(name)):
                continue
            if not is_missing(known.get(name)):
                data[name] = known[name]
            elif name in contract.list_fields:
                data[name] = [placeholder(name)]
            else:
                data[name] = placeholder(name)
            repaired.append(name)

        for parent, children in contract.nested_fields.items():
            value = data.get(parent)
            if not isinstance(value, dict):
                value = {}
                data[parent] = value
            for child in children:
                if is_missing(value.get(child)):
                    value[child] = placeholder(f"{parent}.{child}")
                    repaired.append(f"{parent}.{child}")

        if "sections" in contract.required_fields or contract.required_sections:
            repaired.extend(self._repair_sections(data, contract))

        if repaired:
            logger.info(f"Repaired {contract.name} output: {', '.join(repaired)}")

        return RepairOutcome(data=data, repaired_fields=repaired)

    @staticmethod
    def _repair_sections(data: Dict[str, Any], contract: ShapeContract) -> List[str]:
        repaired: List[str] = []
        sections = data.get("sections")
        if not isinstance(sections, list):
            sections = []
            data["sections"] = sections
            if not contract.required_sections:
                repaired.append("sections")

        titles = {}
        for section in sections:
            if isinstance(section, dict) and isinstance(section.get("title"), str):
                titles[section["title"].strip().lower()] = section

        for title in contract.required_sections:
            existing = titles.get(title.lower())
            if existing is None:
                sections.append({"title": title, "content": placeholder(f"section '{title}'")})
                repaired.append(f"sections[{title}]")
            elif is_missing(existing.get("content")):
                existing["content"] = placeholder(f"section '{title}'")
                repaired.append(f"sections[{title}].content")

        return repaired


REPORT_SECTIONS = (
    "Executive Summary",
    "Investment Thesis",
    "Business Overview",
    "Financial Analysis",
    "Valuation",
    "Risk Factors",
)

REPORT_CONTRACT = ShapeContract(
    name="report",
    required_fields=(
        "symbol", "companyName", "date", "recommendation", "targetPrice", "summary", "sections",
    ),
    required_sections=REPORT_SECTIONS,
)

PREDICTION_CONTRACT = ShapeContract(
    name="prediction",
    required_fields=(
        "symbol", "currentPrice", "predictedPrice", "sentimentAnalysis",
        "confidenceLevel", "keyDrivers", "risks",
    ),
    list_fields=("keyDrivers", "risks"),
    nested_fields={"predictedPrice": ("oneMonth", "threeMonths", "sixMonths", "oneYear")},
)


def parse_and_repair(
    text: str,
    contract: ShapeContract,
    known: Optional[Dict[str, Any]] = None,
    repairer: Optional[ResponseRepairer] = None
) -> RepairOutcome:
    """Extract the first JSON object from `text` and repair it against `contract`."""
    obj = extract_first_json_object(text)
    return (repairer or ResponseRepairer()).repair(obj, contract, known)
