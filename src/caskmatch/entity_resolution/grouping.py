"""Pre-aggregation of bulk-import rows into unique-product groups.

Each group is resolved exactly once; the resolved id is then fanned out
to every row in the group.
"""

from __future__ import annotations

from collections.abc import Mapping

from caskmatch.errors import RowError, UnresolvableGroupKey

# Logical field names used in column mappings
FIELD_NAME = "wine"
FIELD_PRODUCER = "producer"
FIELD_VINTAGE = "vintage"
FIELD_EXTERNAL_ID = "iWine"


def row_value(row: Mapping[str, str], mapping: Mapping[str, str], field: str) -> str:
    """Stripped cell for logical *field*, or ``""`` when unmapped or missing."""
    header = mapping.get(field)
    if not header:
        return ""
    value = row.get(header)
    if value is None:
        return ""
    return str(value).strip()


def group_key(
    row: Mapping[str, str],
    mapping: Mapping[str, str],
    *,
    use_external_id: bool = False,
) -> str:
    """Identity key for one row.

    The external product id when *use_external_id* is set and mapped;
    otherwise ``name|producer|vintage`` case-folded.

    Raises:
        UnresolvableGroupKey: If the key would be empty.
    """
    if use_external_id and mapping.get(FIELD_EXTERNAL_ID):
        key = row_value(row, mapping, FIELD_EXTERNAL_ID)
        if not key:
            raise UnresolvableGroupKey("Row has no external product id")
        return key

    name = row_value(row, mapping, FIELD_NAME)
    if not name:
        raise UnresolvableGroupKey("Row has no product name")
    producer = row_value(row, mapping, FIELD_PRODUCER)
    vintage = row_value(row, mapping, FIELD_VINTAGE)
    return f"{name}|{producer}|{vintage}".casefold()


def group_rows(
    rows: list[Mapping[str, str]],
    mapping: Mapping[str, str],
    *,
    use_external_id: bool = False,
) -> tuple[dict[str, list[int]], list[RowError]]:
    """Group row indices by identity key, in first-seen order.

    Rows without a usable key are returned as :class:`RowError` entries
    (referenced by row index) instead of being dropped.
    """
    groups: dict[str, list[int]] = {}
    errors: list[RowError] = []

    for index, row in enumerate(rows):
        try:
            key = group_key(row, mapping, use_external_id=use_external_id)
        except UnresolvableGroupKey as e:
            errors.append(RowError(reference=str(index), message=str(e)))
            continue
        groups.setdefault(key, []).append(index)

    return groups, errors
