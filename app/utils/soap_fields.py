"""
SOAP field extraction

Carrier SOAP responses are read through the XMLFieldExtractor interface so
the parsing strategy can be swapped without touching the carrier clients.
RegexFieldExtractor is the default: it tolerates namespace prefixes
(<ns2:due> and <due> both match) and entity-escaped text.

Known limitation: the regex strategy reads element text only. Attributes on
the target element are ignored, and an element nested inside another element
of the same name ends the outer match early.
"""
import re
from typing import Dict, List, Optional, Tuple
from xml.sax.saxutils import escape, unescape

_PREFIX = r"(?:[A-Za-z_][\w.-]*:)?"

FAULT_MARKERS = ("soap:Fault", "soapenv:Fault", "SOAP-ENV:Fault")


def xml_text(value) -> str:
    """Escape a value for use as XML element text."""
    return escape("" if value is None else str(value))


class XMLFieldExtractor:
    """Interface for pulling element text and blocks out of an XML document."""

    def find_blocks(self, xml: str, tag: str) -> List[str]:
        """Inner XML of every <tag> element, in document order."""
        raise NotImplementedError

    def find_text(self, xml: str, tag: str) -> Optional[str]:
        """Stripped text of the first <tag> element, or None."""
        raise NotImplementedError

    def find_fields(self, xml: str, tags: Tuple[str, ...]) -> Dict[str, Optional[str]]:
        return {tag: self.find_text(xml, tag) for tag in tags}


class RegexFieldExtractor(XMLFieldExtractor):
    def __init__(self):
        self._patterns: Dict[str, re.Pattern] = {}

    def _pattern(self, tag: str) -> re.Pattern:
        pattern = self._patterns.get(tag)
        if pattern is None:
            name = re.escape(tag)
            pattern = re.compile(
                rf"<{_PREFIX}{name}(?:\s[^>]*)?>(.*?)</{_PREFIX}{name}\s*>",
                re.DOTALL,
            )
            self._patterns[tag] = pattern
        return pattern

    def find_blocks(self, xml: str, tag: str) -> List[str]:
        return self._pattern(tag).findall(xml or "")

    def find_text(self, xml: str, tag: str) -> Optional[str]:
        match = self._pattern(tag).search(xml or "")
        if not match:
            return None
        return unescape(match.group(1).strip())


def is_soap_fault(xml: str) -> bool:
    return any(marker in (xml or "") for marker in FAULT_MARKERS)


def extract_fault(xml: str, extractor: Optional[XMLFieldExtractor] = None) -> Tuple[str, str]:
    """Return (faultcode, faultstring), with "Unknown" placeholders when absent."""
    extractor = extractor or RegexFieldExtractor()
    fault_code = extractor.find_text(xml, "faultcode") or "Unknown"
    fault_string = extractor.find_text(xml, "faultstring") or "Unknown error"
    return fault_code, fault_string
