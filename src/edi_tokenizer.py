import logging
from typing import Iterator, List, Optional, Tuple, Union

from cdm import Delimiters, Element, Segment
from edi_errors import TokenizationError

logger = logging.getLogger(__name__)

DEFAULT_MAX_ELEMENT_LENGTH = 1024

# ISA carries the delimiters as data (ISA11, ISA16), so its elements are never split further.
LITERAL_SEGMENTS = frozenset({'ISA'})


class SegmentTokenizer:
    """
    Lazy, restartable sequence of Segments over a raw document.

    Each call to iter() starts a fresh pass over the same text, so a tokenizer can be
    consumed more than once.
    """

    def __init__(
        self,
        raw: Union[str, bytes],
        delimiters: Delimiters,
        max_element_length: int = DEFAULT_MAX_ELEMENT_LENGTH,
        encoding: str = 'latin-1',
    ):
        self._text = raw.decode(encoding) if isinstance(raw, bytes) else raw
        self.delimiters = delimiters
        self.max_element_length = max_element_length

    def __iter__(self) -> Iterator[Segment]:
        return self._tokenize()

    def _tokenize(self) -> Iterator[Segment]:
        text = self._text
        terminator = self.delimiters.segment_terminator
        length = len(text)
        start = 0
        position = 0

        while start < length:
            end = text.find(terminator, start)
            if end == -1:
                end = length
            chunk = text[start:end]
            body = chunk.strip()
            if position == 0:
                body = body.lstrip('\ufeff')
            if body:
                position += 1
                offset = start + chunk.index(body)
                yield self._tokenize_segment(body, position, offset)
            start = end + 1

        logger.debug(f"Tokenizer produced {position} segments.")

    def _tokenize_segment(self, body: str, position: int, offset: int) -> Segment:
        parts = body.split(self.delimiters.element)
        tag = parts[0]
        if len(tag) > self.max_element_length:
            raise TokenizationError(
                f"Segment {position} has a {len(tag)} character tag (limit {self.max_element_length}).",
                offset=offset,
                position=position,
            )
        literal = tag in LITERAL_SEGMENTS

        elements: List[Element] = []
        element_offset = offset + len(tag) + 1
        for index, raw_element in enumerate(parts[1:], start=1):
            if len(raw_element) > self.max_element_length:
                raise TokenizationError(
                    f"Element {tag}{index:02d} in segment {position} is {len(raw_element)} characters long "
                    f"(limit {self.max_element_length}).",
                    offset=element_offset,
                    position=position,
                )
            elements.append(Element(position=index, repeats=self._split_element(raw_element, literal)))
            element_offset += len(raw_element) + 1

        return Segment(tag=tag, position=position, offset=offset, elements=tuple(elements))

    def _split_element(self, raw_element: str, literal: bool) -> Tuple[Tuple[str, ...], ...]:
        if literal:
            return ((raw_element,),)
        repetition: Optional[str] = self.delimiters.repetition
        instances = raw_element.split(repetition) if repetition else [raw_element]
        return tuple(tuple(instance.split(self.delimiters.component)) for instance in instances)


def tokenize(
    raw: Union[str, bytes],
    delimiters: Delimiters,
    max_element_length: int = DEFAULT_MAX_ELEMENT_LENGTH,
    encoding: str = 'latin-1',
) -> List[Segment]:
    """Tokenizes the whole document eagerly."""
    return list(SegmentTokenizer(raw, delimiters, max_element_length, encoding))
