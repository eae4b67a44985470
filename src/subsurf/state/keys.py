"""
Domain-prefixed key names.

Fields on the default (subsurface) domain use bare names (``pressure``);
fields on any other domain are prefixed, ``surface-pressure``.
"""
from typing import Optional, Tuple

from subsurf.core.types import Key

DEFAULT_DOMAIN = "domain"
SURFACE_DOMAIN = "surface"
DELIMITER = "-"


def get_key(domain: Optional[str], name: str) -> Key:
    if not domain or domain == DEFAULT_DOMAIN:
        return name
    return f"{domain}{DELIMITER}{name}"


def split_key(key: Key) -> Tuple[str, str]:
    """(domain, variable name) of a key"""
    if DELIMITER in key:
        domain, name = key.split(DELIMITER, 1)
        return domain, name
    return DEFAULT_DOMAIN, key


def get_domain(key: Key) -> str:
    return split_key(key)[0]


def read_key(plist, domain: Optional[str], basename: str, default_name: Optional[str] = None) -> Key:
    """Key from a ``"<basename> key"`` option, defaulting to ``domain``-prefixed ``default_name``."""
    explicit = plist.get(f"{basename} key") if plist is not None else None
    if explicit:
        return explicit
    return get_key(domain, default_name or basename.replace(" ", "_"))
