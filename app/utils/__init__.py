"""
Utility modules for the shipping rate service.
"""
from app.utils.soap_fields import (
    XMLFieldExtractor,
    RegexFieldExtractor,
    extract_fault,
    is_soap_fault,
    xml_text,
)

__all__ = [
    "XMLFieldExtractor",
    "RegexFieldExtractor",
    "extract_fault",
    "is_soap_fault",
    "xml_text",
]
