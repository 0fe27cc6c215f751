"""Conversion between Docker env lists and mappings."""

from typing import Dict, Iterable, List, Mapping

from shunt.errors import MalformedEnvEntry


def env_to_mapping(entries: Iterable[str]) -> Dict[str, str]:
    """Parse ``KEY=VALUE`` entries into a dict.

    Only the first ``=`` separates key and value. Later duplicates win,
    like they do in the engine.
    """
    mapping: Dict[str, str] = {}
    for entry in entries:
        key, sep, value = entry.partition("=")
        if not sep:
            raise MalformedEnvEntry(entry)
        mapping[key] = value
    return mapping


def env_to_list(mapping: Mapping[str, str]) -> List[str]:
    """Render a mapping as ``KEY=VALUE`` entries, in mapping order."""
    return [f"{key}={value}" for key, value in mapping.items()]
