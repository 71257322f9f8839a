"""XML persistence of optimizer configuration.

Each optimizer writes one root element named after its class, holding one
child element per setting with the value as text. Booleans are written as
``1`` / ``0``; floats use ``repr`` so they round-trip exactly, including
``inf`` and ``-inf``.
"""

from __future__ import annotations

import logging
import xml.etree.ElementTree as ET
from enum import Enum
from pathlib import Path
from typing import Any, TYPE_CHECKING

from nnopt.optimization.errors import ConfigurationError
from nnopt.optimization.line_search import LineSearchConfig, LineSearchMethod


if TYPE_CHECKING:
    from collections.abc import Callable


logger = logging.getLogger(__name__)

LINE_SEARCH_TAG = "LearningRateAlgorithm"


def format_value(value: Any) -> str:
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, Enum):
        return str(value.value)
    if isinstance(value, float):
        return repr(value)
    return str(value)


def parse_bool(text: str) -> bool:
    normalized = text.strip().lower()
    if normalized in ("1", "true"):
        return True
    if normalized in ("0", "false"):
        return False
    raise ValueError(f"not a boolean: '{text}'")


def add_element(parent: ET.Element, tag: str, value: Any) -> ET.Element:
    """Append ``<tag>value</tag>`` to ``parent``."""
    element = ET.SubElement(parent, tag)
    element.text = format_value(value)
    return element


def read_element(
    parent: ET.Element,
    tag: str,
    parse: Callable[[str], Any],
    default: Any = None,
) -> Any:
    """Parse the text of child ``tag``.

    A missing child returns ``default``; unparsable text raises
    ``ConfigurationError``.
    """
    element = parent.find(tag)
    if element is None or element.text is None:
        return default
    try:
        return parse(element.text.strip())
    except ValueError as e:
        raise ConfigurationError(
            f"Invalid value for <{tag}> in <{parent.tag}>: '{element.text}'"
        ) from e


def line_search_to_xml(config: LineSearchConfig) -> ET.Element:
    element = ET.Element(LINE_SEARCH_TAG)
    add_element(element, "LearningRateMethod", config.method)
    add_element(element, "LearningRateTolerance", config.learning_rate_tolerance)
    add_element(element, "LossTolerance", config.loss_tolerance)
    add_element(element, "MaximumIterations", config.maximum_iterations)
    return element


def line_search_from_xml(
    parent: ET.Element, config: LineSearchConfig
) -> LineSearchConfig:
    """Read the line-search child of ``parent``, keeping ``config`` values
    for missing fields."""
    element = parent.find(LINE_SEARCH_TAG)
    if element is None:
        return config
    return LineSearchConfig(
        method=read_element(
            element, "LearningRateMethod", _parse_line_search_method, config.method
        ),
        learning_rate_tolerance=read_element(
            element,
            "LearningRateTolerance",
            float,
            config.learning_rate_tolerance,
        ),
        loss_tolerance=read_element(
            element, "LossTolerance", float, config.loss_tolerance
        ),
        maximum_iterations=read_element(
            element, "MaximumIterations", int, config.maximum_iterations
        ),
    )


def _parse_line_search_method(text: str) -> LineSearchMethod:
    return LineSearchMethod(text)


def check_root(element: ET.Element, tag: str) -> None:
    if element.tag != tag:
        raise ConfigurationError(f"Expected <{tag}> element, got <{element.tag}>")


def write_document(element: ET.Element, file_name: str | Path) -> None:
    path = Path(file_name)
    path.parent.mkdir(parents=True, exist_ok=True)
    tree = ET.ElementTree(element)
    ET.indent(tree)
    tree.write(path, encoding="utf-8", xml_declaration=True)
    logger.debug(f"Wrote <{element.tag}> to {path}")


def read_document(file_name: str | Path) -> ET.Element:
    """Parse an XML file and return its root element."""
    try:
        return ET.parse(file_name).getroot()
    except ET.ParseError as e:
        raise ConfigurationError(f"Cannot parse XML file {file_name}: {e}") from e
