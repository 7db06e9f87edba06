import logging
from typing import Iterable, List, Sequence, Union

from cdm import Delimiters, DocumentTree, Element, Segment
from edi_tokenizer import LITERAL_SEGMENTS

logger = logging.getLogger(__name__)


def serialize_element(element: Element, delimiters: Delimiters, literal: bool = False) -> str:
    if literal:
        return element.value
    instances = [delimiters.component.join(instance) for instance in element.repeats]
    return (delimiters.repetition or '').join(instances)


def serialize_segment(segment: Segment, delimiters: Delimiters) -> str:
    literal = segment.tag in LITERAL_SEGMENTS
    parts = [segment.tag] + [serialize_element(element, delimiters, literal) for element in segment.elements]
    return delimiters.element.join(parts) + delimiters.segment_terminator


def serialize_segments(segments: Iterable[Segment], delimiters: Delimiters, line_break: bool = False) -> str:
    """Renders segments back to X12 text with the given delimiters."""
    separator = '\n' if line_break and delimiters.segment_terminator != '\n' else ''
    return separator.join(serialize_segment(segment, delimiters) for segment in segments)


def serialize_tree(tree: DocumentTree, line_break: bool = False) -> str:
    return serialize_segments(tree.segments, tree.delimiters, line_break)


def replace_element(
    tree: DocumentTree,
    segment_position: int,
    element_position: int,
    value: Union[str, Sequence[str]],
    line_break: bool = False,
) -> str:
    """
    Produces a new raw document in which one element of one segment has a new value.

    The change is made on the segment list and re-serialized with the delimiters recorded
    at parse time; the caller re-parses the result to obtain a new DocumentTree.
    A sequence value is written as a composite element.
    """
    segment = tree.segment_at(segment_position)
    if segment is None:
        raise IndexError(f"Document has no segment at position {segment_position}.")
    if element_position < 1:
        raise IndexError(f"Element positions are 1-based, got {element_position}.")

    components = (value,) if isinstance(value, str) else tuple(value)
    elements: List[Element] = list(segment.elements)
    while len(elements) < element_position:
        elements.append(Element(position=len(elements) + 1, repeats=(("",),)))
    elements[element_position - 1] = Element(position=element_position, repeats=(components,))

    changed = segment.model_copy(update={"elements": tuple(elements)})
    segments = list(tree.segments)
    segments[segment_position - 1] = changed
    logger.info(f"Replaced {segment.tag}{element_position:02d} at segment {segment_position} and re-serialized the document.")
    return serialize_segments(segments, tree.delimiters, line_break)
