"""
Parsers Module

JSON payload parsing for the OCDS release endpoint.

Components:
    - OCDSParser: Extracts releases and the advertised total count
    - OCDSPage: Parsed page payload
    - get_path: Dotted-path lookup on nested release dicts
"""

from .ocds_parser import OCDSPage, OCDSParser, get_path

__all__ = [
    "OCDSParser",
    "OCDSPage",
    "get_path",
]
