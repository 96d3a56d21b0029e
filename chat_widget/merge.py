from __future__ import annotations

from typing import Any, Dict, Iterable, List, Mapping, Optional, Set

from .schemas import RETRACTED_KEY, SchemaDescriptor
from .utils import is_empty_value, value_key


def merge(prior: Optional[Mapping[str, Any]], candidate: Optional[Mapping[str, Any]], schema: SchemaDescriptor) -> Dict[str, Any]:
    """Purpose: Reconcile an extracted candidate snapshot with the prior snapshot.
    Inputs/Outputs: Inputs are prior/candidate mappings and the schema; output is the
        next snapshot as a new dict (unset fields are absent keys).
    Side Effects / State: None; inputs are never mutated.
    Dependencies: _merge_array for array fields, is_empty_value for scalars.
    Failure Modes: None; non-list values in array fields are treated as single values.
    If Removed: Each extraction would overwrite state and drop earlier answers.
    Testing Notes: Idempotent: merge(merge(p, c, s), c, s) == merge(p, c, s).
    """
    # Undeclared prior keys ride along untouched; declared keys follow field rules.
    prior = dict(prior or {})
    candidate = dict(candidate or {})
    retracted = {value_key(item) for item in _as_list(candidate.get(RETRACTED_KEY))}

    merged: Dict[str, Any] = {key: value for key, value in prior.items() if key not in schema.fields}
    for key, spec in schema.fields.items():
        if spec.is_array:
            claimed: Set[str] = set()
            for sibling in schema.siblings(key):
                claimed.update(value_key(item) for item in _as_list(candidate.get(sibling)))
            values = _merge_array(_as_list(prior.get(key)), _as_list(candidate.get(key)), retracted | claimed)
            if values:
                merged[key] = values
            continue
        new_value = candidate.get(key)
        if not is_empty_value(new_value):
            merged[key] = new_value
        elif key in prior and not is_empty_value(prior[key]):
            merged[key] = prior[key]
    return merged


def _merge_array(prior: List[Any], candidate: List[Any], dropped: Set[str]) -> List[Any]:
    # Candidate values always survive; prior values survive unless dropped.
    candidate_keys = {value_key(item) for item in candidate}
    output: List[Any] = []
    seen: Set[str] = set()
    for item in prior:
        key = value_key(item)
        if key in seen or is_empty_value(item):
            continue
        if key in dropped and key not in candidate_keys:
            continue
        seen.add(key)
        output.append(item)
    for item in candidate:
        key = value_key(item)
        if key in seen or is_empty_value(item):
            continue
        seen.add(key)
        output.append(item)
    return output


def _as_list(value: Any) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    if isinstance(value, (tuple, set)):
        return list(value)
    return [value]


def missing_required(snapshot: Optional[Mapping[str, Any]], schema: SchemaDescriptor) -> List[str]:
    """List required field names that are absent or empty in the snapshot."""
    snapshot = snapshot or {}
    return [key for key in schema.required_fields() if is_empty_value(snapshot.get(key))]


def required_satisfied(snapshot: Optional[Mapping[str, Any]], schema: SchemaDescriptor) -> bool:
    """True when every field marked required holds a non-empty value."""
    return not missing_required(snapshot, schema)


def changed_fields(before: Mapping[str, Any], after: Mapping[str, Any], keys: Iterable[str]) -> List[str]:
    """Field names whose value differs between two snapshots."""
    return [key for key in keys if before.get(key) != after.get(key)]
