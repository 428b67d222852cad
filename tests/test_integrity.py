import hashlib

import pytest

from vidvault.client.integrity import ChunkIntegrityVerifier


def test_compute_uses_exact_bytes() -> None:
    verifier = ChunkIntegrityVerifier()
    assert verifier.compute(0, b"chunk") == hashlib.sha256(b"chunk").hexdigest()


def test_verify_records_results_per_index() -> None:
    verifier = ChunkIntegrityVerifier()
    good = verifier.compute(0, b"good")

    assert verifier.verify(0, b"good", good)
    assert not verifier.verify(1, b"bad", good)

    results = verifier.results()
    assert results[0].ok and not results[1].ok
    assert results[1].expected == good

    verifier.clear()
    assert verifier.results() == {}


def test_algorithm_is_injectable() -> None:
    verifier = ChunkIntegrityVerifier("blake2b")
    assert verifier.compute(0, b"x") == hashlib.blake2b(b"x").hexdigest()
    with pytest.raises(ValueError):
        ChunkIntegrityVerifier("not-a-hash")
