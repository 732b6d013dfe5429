from __future__ import annotations

import pytest

from utils.identifier_registry import normalize_external_id, normalize_namespace


@pytest.mark.parametrize(
    "namespace,value,expected",
    [
        ("chain", "0xABC", "0xabc"),
        ("chain", "  0xAbC123  ", "0xabc123"),
        ("chain", "bc1qxyZ", "bc1qxyZ"),
        ("slug", "Wrapped Bitcoin", "wrapped-bitcoin"),
        ("slug", "  BTC  ", "btc"),
        ("partner", " coingecko:bitcoin ", "coingecko:bitcoin"),
    ],
)
def test_normalize_external_id_valid(namespace: str, value: str, expected: str) -> None:
    assert normalize_external_id(namespace, value) == expected


@pytest.mark.parametrize(
    "namespace,value",
    [
        ("chain", "0xZZZ"),
        ("chain", "0x"),
        ("slug", "   "),
        ("partner", ""),
        ("partner", "x" * 257),
    ],
)
def test_normalize_external_id_invalid_raises(namespace: str, value: str) -> None:
    with pytest.raises(ValueError):
        normalize_external_id(namespace, value)


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("chain", "chain"),
        ("CHAIN", "chain"),
        ("address", "chain"),
        ("contract", "chain"),
        ("partner_id", "partner"),
        ("partner-id", "partner"),
        ("handle", "slug"),
        ("exchange_ticker", "exchange_ticker"),
    ],
)
def test_namespace_alias(raw: str, expected: str) -> None:
    assert normalize_namespace(raw) == expected


@pytest.mark.parametrize("raw", ["", "   ", "has space", "ns!", "x" * 65])
def test_namespace_invalid_raises(raw: str) -> None:
    with pytest.raises(ValueError):
        normalize_namespace(raw)
