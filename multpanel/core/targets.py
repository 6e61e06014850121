# -*- coding: utf-8 -*-
"""target registry - which clusters a bulk operation runs against"""

from multpanel.core.errors import ValidationError


def normalize_ids(raw_ids, field='targetIds'):
    """Turn a JSON list of ids into ints. None stays None (= all active)."""
    if raw_ids is None:
        return None
    if not isinstance(raw_ids, (list, tuple)):
        raise ValidationError(f'{field} must be an array')
    ids = []
    for raw in raw_ids:
        # bool is an int subclass, "true" is not a cluster id
        if isinstance(raw, bool):
            raise ValidationError(f'Invalid cluster id in {field}: {raw!r}')
        try:
            ids.append(int(raw))
        except (TypeError, ValueError):
            raise ValidationError(f'Invalid cluster id in {field}: {raw!r}')
    return ids


def load_candidates(db):
    """all active clusters, ordered by id"""
    return db.get_clusters(status='active', include_secret=True)


def resolve_targets(candidates, target_ids=None, source_id=None):
    """Pick the target clusters for one bulk operation.

    target_ids None -> every candidate. Otherwise submission order is kept and
    duplicates are dropped. The source cluster is never its own target.
    Returns an empty list when nothing is left; the caller decides whether
    that is an error.
    """
    by_id = {c['id']: c for c in candidates}

    if target_ids is None:
        ordered = list(candidates)
    else:
        missing = [tid for tid in target_ids if tid not in by_id]
        if missing:
            raise ValidationError(f'One or more target clusters not found: {missing}')
        ordered = []
        seen = set()
        for tid in target_ids:
            if tid in seen:
                continue
            seen.add(tid)
            ordered.append(by_id[tid])

    if source_id is not None:
        ordered = [c for c in ordered if c['id'] != source_id]
    return ordered
