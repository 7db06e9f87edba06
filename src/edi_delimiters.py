import logging
from typing import Union

from cdm import Delimiters
from edi_errors import MalformedEnvelope

logger = logging.getLogger(__name__)

# The ISA segment is fixed width: 16 elements of known size, so every delimiter
# sits at a known offset.
ISA_TAG = 'ISA'
ISA_LENGTH = 106
ISA_ELEMENT_SEPARATOR_OFFSETS = (3, 6, 17, 20, 31, 34, 50, 53, 69, 76, 81, 83, 89, 99, 101, 103)
ISA_REPETITION_OFFSET = 82
ISA_COMPONENT_OFFSET = 104
ISA_TERMINATOR_OFFSET = 105


def _as_text(raw: Union[str, bytes], encoding: str = 'latin-1') -> str:
    if isinstance(raw, bytes):
        return raw.decode(encoding)
    return raw


def detect_delimiters(raw: Union[str, bytes], encoding: str = 'latin-1') -> Delimiters:
    """Reads element, repetition, component and segment delimiters from the leading ISA segment."""
    text = _as_text(raw, encoding).lstrip('\ufeff').lstrip()

    if len(text) < ISA_LENGTH:
        raise MalformedEnvelope(f"Document is {len(text)} characters long; an ISA segment needs {ISA_LENGTH}.", offset=0)
    if not text.startswith(ISA_TAG):
        raise MalformedEnvelope(f"Document must begin with an ISA segment, found '{text[:3]}'.", offset=0)

    element = text[ISA_ELEMENT_SEPARATOR_OFFSETS[0]]
    for offset in ISA_ELEMENT_SEPARATOR_OFFSETS:
        if text[offset] != element:
            raise MalformedEnvelope(
                f"ISA segment is not fixed width: expected element separator '{element}' at offset {offset}, found '{text[offset]}'.",
                offset=offset,
            )

    repetition = text[ISA_REPETITION_OFFSET]
    component = text[ISA_COMPONENT_OFFSET]
    terminator = text[ISA_TERMINATOR_OFFSET]

    # Before 00501 ISA11 is the standards identifier ('U'), not a repetition separator.
    if repetition.isalnum() or repetition.isspace():
        logger.debug(f"ISA11 '{repetition}' is not a separator; repetition delimiter disabled.")
        repetition = None

    if element.isalnum() or element.isspace():
        raise MalformedEnvelope(f"Invalid element separator '{element}'.", offset=ISA_ELEMENT_SEPARATOR_OFFSETS[0])
    if component.isalnum() or component.isspace():
        raise MalformedEnvelope(f"Invalid component separator '{component}'.", offset=ISA_COMPONENT_OFFSET)
    if terminator.isalnum():
        raise MalformedEnvelope(f"Invalid segment terminator '{terminator}'.", offset=ISA_TERMINATOR_OFFSET)

    separators = [element, component, terminator] + ([repetition] if repetition else [])
    if len(set(separators)) != len(separators):
        raise MalformedEnvelope(f"ISA delimiters are not distinct: {separators!r}.", offset=0)

    delimiters = Delimiters(element=element, component=component, repetition=repetition, segment_terminator=terminator)
    logger.debug(f"Delimiters detected: Element='{element}', Component='{component}', Repetition='{repetition}', Segment='{terminator!r}'")
    return delimiters
