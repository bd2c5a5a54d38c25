"""Normalization of the many result shapes LSP servers return."""

from __future__ import annotations

from typing import Any


def normalize_locations(result: Any) -> list[dict[str, Any]]:
    """Flatten ``Location | Location[] | LocationLink[] | None`` into Locations."""
    if not result:
        return []
    items = result if isinstance(result, list) else [result]
    locations: list[dict[str, Any]] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        if "uri" in item:
            locations.append({"uri": item["uri"], "range": item.get("range")})
        elif "targetUri" in item:
            locations.append(
                {
                    "uri": item["targetUri"],
                    "range": item.get("targetSelectionRange") or item.get("targetRange"),
                }
            )
    return locations


def normalize_symbols(result: Any) -> list[dict[str, Any]]:
    """Convert ``SymbolInformation[]`` into ``DocumentSymbol``-shaped dicts.

    Hierarchical ``DocumentSymbol[]`` results are returned unchanged.
    """
    if not result or not isinstance(result, list):
        return []
    if not isinstance(result[0], dict) or "location" not in result[0]:
        return result
    symbols: list[dict[str, Any]] = []
    for sym in result:
        location = sym.get("location", {})
        symbols.append(
            {
                "name": sym.get("name"),
                "kind": sym.get("kind"),
                "range": location.get("range"),
                "selectionRange": location.get("range"),
                "detail": sym.get("containerName"),
                "children": [],
            }
        )
    return symbols


def find_symbol_position(symbols: list[dict[str, Any]], query: str) -> dict[str, int] | None:
    """Locate a symbol by name in a (possibly nested) symbol tree.

    An exact, case-insensitive name match wins over a substring match.
    """
    needle = query.lower()
    exact: dict[str, int] | None = None
    partial: dict[str, int] | None = None

    stack = list(reversed(symbols))
    while stack:
        sym = stack.pop()
        name = str(sym.get("name") or "").lower()
        position = (sym.get("selectionRange") or sym.get("range") or {}).get("start")
        if position and isinstance(position.get("line"), int):
            if exact is None and name == needle:
                exact = position
            if partial is None and needle in name:
                partial = position
        stack.extend(reversed(sym.get("children") or []))

    found = exact or partial
    if found is None:
        return None
    return {"line": found["line"], "character": found.get("character", 0)}


def ranges_overlap(a: dict[str, Any], b: dict[str, Any]) -> bool:
    """Whether two ranges share at least one line."""
    return not (
        a["end"]["line"] < b["start"]["line"] or b["end"]["line"] < a["start"]["line"]
    )
