import pytest

from edi_delimiters import detect_delimiters
from edi_errors import MalformedEnvelope, ParseError

pytestmark = pytest.mark.unit

ISA = "ISA*00*          *00*          *ZZ*SENDERID       *ZZ*RECEIVERID     *240715*1200*^*00501*000000001*0*P*:~"


def test_detects_standard_delimiters():
    delimiters = detect_delimiters(ISA)
    assert delimiters.element == "*"
    assert delimiters.component == ":"
    assert delimiters.repetition == "^"
    assert delimiters.segment_terminator == "~"


def test_detects_non_default_delimiters():
    """Tests that delimiters are read from their fixed ISA offsets, whatever characters they are."""
    custom = ISA.replace("*", "|").replace(":~", ">\n")
    delimiters = detect_delimiters(custom)
    assert delimiters.element == "|"
    assert delimiters.component == ">"
    assert delimiters.segment_terminator == "\n"


def test_accepts_bytes_and_leading_bom():
    assert detect_delimiters(ISA.encode("latin-1")).element == "*"
    assert detect_delimiters("\ufeff" + ISA).element == "*"


def test_pre_00501_standards_identifier_disables_repetition():
    """Before version 00501 ISA11 holds 'U' rather than a separator."""
    older = ISA.replace("*^*00501*", "*U*00401*")
    assert detect_delimiters(older).repetition is None


def test_short_document_is_rejected():
    with pytest.raises(MalformedEnvelope) as exc_info:
        detect_delimiters("ISA*00*~")
    assert exc_info.value.offset == 0


def test_document_must_start_with_isa():
    with pytest.raises(MalformedEnvelope):
        detect_delimiters("GS" + ISA[2:])


def test_non_fixed_width_isa_is_rejected():
    """Tests that an ISA with a short sender id (not padded to 15) is reported at the first bad offset."""
    shifted = ISA.replace("SENDERID       ", "SENDERID")
    with pytest.raises(MalformedEnvelope) as exc_info:
        detect_delimiters(shifted + "X" * 10)
    assert exc_info.value.offset == 50


def test_delimiters_must_be_distinct():
    same = ISA[:104] + "*~"
    with pytest.raises(ParseError):
        detect_delimiters(same)
