"""Minimal DNS wire-format helpers.

Brief:
  Extracts the question name from a raw UDP query and synthesizes a
  0.0.0.0 A answer for blocked names. Only the header and the first question
  are interpreted; everything else is opaque.

Inputs:
  - Raw DNS query datagrams (bytes)

Outputs:
  - Normalized query names and block-response datagrams
"""

from __future__ import annotations

import struct
from typing import Optional, Tuple

from ..errors import InvalidDnsQuery

HEADER_LEN = 12
BLOCK_TTL = 60

# Answer RR: name pointer to offset 12, type A, class IN, TTL 60, RDLENGTH 4,
# RDATA 0.0.0.0.
BLOCK_ANSWER = bytes.fromhex("c00c" "0001" "0001" "0000003c" "0004" "00000000")

_QR = 0x80
_AA = 0x04
_OPCODE_AND_RD = 0x79
_RA = 0x80


def _walk_question_name(data: bytes) -> Tuple[str, int]:
    if len(data) < HEADER_LEN:
        raise InvalidDnsQuery(f"datagram too short ({len(data)} bytes)")

    labels = []
    offset = HEADER_LEN
    while True:
        if offset >= len(data):
            raise InvalidDnsQuery("question name is missing its terminator")
        length = data[offset]
        offset += 1
        if length == 0:
            break
        if length & 0xC0:
            raise InvalidDnsQuery("compression pointer in question name")
        if offset + length > len(data):
            raise InvalidDnsQuery("label runs past end of datagram")
        raw = data[offset : offset + length]
        try:
            labels.append(raw.decode("ascii"))
        except UnicodeDecodeError as e:
            raise InvalidDnsQuery("non-ASCII label in question name") from e
        offset += length
    return ".".join(labels).lower(), offset


def extract_query_name(data: bytes) -> str:
    """Brief: Return the normalized question name of a DNS query.

    Inputs:
      - data: Raw query datagram.

    Outputs:
      - str: Lower-cased name without trailing dot ("" for the root).

    Raises:
      - InvalidDnsQuery: when the datagram is shorter than the header, a label
        length runs past the buffer, the terminator is missing, a compression
        pointer appears, or a label is not ASCII.

    Example:
      >>> q = bytes(12) + b"\\x03Ads\\x07example\\x03com\\x00\\x00\\x01\\x00\\x01"
      >>> extract_query_name(q)
      'ads.example.com'
    """
    name, _ = _walk_question_name(data)
    return name


def query_type(data: bytes) -> Optional[int]:
    """Return the QTYPE of the first question, or None when it is absent."""
    try:
        _, offset = _walk_question_name(data)
    except InvalidDnsQuery:
        return None
    if offset + 2 > len(data):
        return None
    return struct.unpack("!H", data[offset : offset + 2])[0]


def query_id(data: bytes) -> Optional[int]:
    if len(data) < 2:
        return None
    return struct.unpack("!H", data[:2])[0]


def build_block_response(query: bytes) -> bytes:
    """Brief: Synthesize a NOERROR answer pointing the query name at 0.0.0.0.

    Inputs:
      - query: Raw query datagram with a parseable first question.

    Outputs:
      - bytes: The query header and first question with flags rewritten
        (QR=1, AA=1, RA=1; ID, opcode and RD kept; rcode 0), QDCOUNT=1,
        ANCOUNT=1, NSCOUNT=ARCOUNT=0, followed by the fixed A answer. Any
        trailing sections of the query (e.g. an EDNS OPT record) are dropped
        so the answer sits directly after the question.

    Raises:
      - InvalidDnsQuery: when the question cannot be walked.
    """
    _, name_end = _walk_question_name(query)
    question_end = min(len(query), name_end + 4)
    if question_end - name_end < 4:
        raise InvalidDnsQuery("question is missing QTYPE/QCLASS")

    out = bytearray(query[:question_end])
    out[2] = _QR | _AA | (query[2] & _OPCODE_AND_RD)
    out[3] = _RA
    struct.pack_into("!HHHH", out, 4, 1, 1, 0, 0)
    out += BLOCK_ANSWER
    return bytes(out)
