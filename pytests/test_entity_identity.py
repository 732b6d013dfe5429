from __future__ import annotations

import pytest

from utils.entity_identity import (
    derive_canonical_id,
    new_canonical_id,
    partition_for,
    validate_canonical_id,
)


def test_new_canonical_id_is_unique_and_prefixed() -> None:
    ids = {new_canonical_id() for _ in range(100)}
    assert len(ids) == 100
    for cid in ids:
        assert cid.startswith("ent_")
        assert len(cid) == 4 + 32  # hex format


def test_derive_canonical_id_deterministic() -> None:
    u1 = derive_canonical_id(namespace="chain", external_id="0xabc")
    u2 = derive_canonical_id(namespace="chain", external_id="0xabc")
    assert u1 == u2
    assert u1.startswith("ent_")


@pytest.mark.parametrize(
    "kw_override",
    [
        {"namespace": "partner"},
        {"external_id": "0xabd"},
    ],
)
def test_derive_canonical_id_changes_on_input_change(kw_override: dict) -> None:
    base_kwargs = dict(namespace="chain", external_id="0xabc")

    u_base = derive_canonical_id(**base_kwargs)
    base_kwargs.update(kw_override)
    u_changed = derive_canonical_id(**base_kwargs)

    assert u_base != u_changed


@pytest.mark.parametrize("value", ["", "  ", "-leading-dash", "has space", "a/b", "x" * 129])
def test_validate_canonical_id_rejects(value: str) -> None:
    with pytest.raises(ValueError):
        validate_canonical_id(value)


def test_validate_canonical_id_trims() -> None:
    assert validate_canonical_id("  ent_1 ") == "ent_1"


def test_partition_for_is_stable_and_in_range() -> None:
    for i in range(200):
        cid = f"ent_{i}"
        p = partition_for(cid, 8)
        assert 0 <= p < 8
        assert partition_for(cid, 8) == p

    # Deterministic across processes (no salted hash()).
    assert partition_for("ent_known", 8) == partition_for("ent_known", 8)
    assert {partition_for(f"ent_{i}", 4) for i in range(200)} == {0, 1, 2, 3}


def test_partition_for_rejects_non_positive_count() -> None:
    with pytest.raises(ValueError):
        partition_for("ent_1", 0)
