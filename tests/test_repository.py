"""Tests for the file-backed candidate repository."""

import json

import pytest

from dex.repository import CandidateRepository
from fakes import make_candidate, make_triangular_candidate


@pytest.fixture
def repo(tmp_path):
    return CandidateRepository(tmp_path / "candidates")


def test_put_and_get(repo):
    candidate = make_candidate(profit_usd=42.0)

    assert repo.put(candidate) is True
    record = repo.get(candidate.fingerprint)

    assert record["fingerprint"] == candidate.fingerprint
    assert record["kind"] == "direct"
    assert record["estimated_profit_usd"] == 42.0
    # Wei amounts are stored as strings so they survive any JSON reader
    assert record["loan_amount_wei"] == str(candidate.loan_amount_wei)
    assert len(repo) == 1


def test_higher_profit_wins(repo):
    low = make_candidate(profit_usd=10.0, fingerprint="fp")
    high = make_candidate(profit_usd=50.0, fingerprint="fp")

    assert repo.put(high) is True
    assert repo.put(low) is False
    assert repo.get("fp")["estimated_profit_usd"] == 50.0

    higher = make_candidate(profit_usd=60.0, fingerprint="fp")
    assert repo.put(higher) is True
    assert repo.get("fp")["estimated_profit_usd"] == 60.0


def test_newer_timestamp_breaks_ties(repo):
    old = make_candidate(profit_usd=10.0, fingerprint="fp").to_record()
    new = dict(old, timestamp=old["timestamp"] + 5, status="queued")

    repo.put(old)
    assert repo.put(new) is True
    assert repo.get("fp")["status"] == "queued"
    assert repo.put(old) is False


def test_delete(repo):
    candidate = make_candidate()
    repo.put(candidate)

    assert repo.delete(candidate.fingerprint) is True
    assert repo.get(candidate.fingerprint) is None
    assert repo.delete(candidate.fingerprint) is False


def test_list_sorted_by_profit(repo):
    repo.put(make_candidate(profit_usd=5.0, fingerprint="small"))
    repo.put(make_triangular_candidate(fingerprint="tri"))
    repo.put(make_candidate(profit_usd=500.0, fingerprint="large"))

    assert [r["fingerprint"] for r in repo.list()] == ["large", "tri", "small"]


def test_no_partial_files(repo):
    repo.put(make_candidate(fingerprint="fp"))
    names = [p.name for p in repo.directory.iterdir()]
    assert names == ["fp.json"]
    with open(repo.directory / "fp.json") as f:
        json.load(f)


@pytest.mark.parametrize("fingerprint", ["", "../escape", ".hidden"])
def test_rejects_unsafe_fingerprints(repo, fingerprint):
    with pytest.raises(ValueError):
        repo.get(fingerprint)
