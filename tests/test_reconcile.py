"""Tests for the pure keep/remove computation."""

from __future__ import annotations

import json

import pytest

from rolelink.models import GrantMapping, SyncBatch, SyncRequest
from rolelink.reconcile import compute, strip_all

pytestmark = pytest.mark.unit

MAPPINGS = [
    GrantMapping(grant_id="g1", local_role_id=1),
    GrantMapping(grant_id="g2", local_role_id=2),
]


class TestCompute:
    def test_member_holding_one_mapped_role(self):
        request = compute({1, 99}, 500, MAPPINGS)
        assert request == SyncRequest(external_id=500, keep=["g1"], remove=["g2"])

    def test_member_holding_no_mapped_roles(self):
        request = compute(set(), 500, MAPPINGS)
        assert request.keep == []
        assert request.remove == ["g1", "g2"]

    def test_no_mappings_gives_empty_request(self):
        request = compute({1, 2}, 500, [])
        assert request.keep == []
        assert request.remove == []

    def test_keep_and_remove_partition_the_mappings(self):
        mappings = [GrantMapping(grant_id=f"g{i}", local_role_id=i) for i in range(10)]
        request = compute({0, 3, 7, 42}, 1, mappings)
        assert set(request.keep).isdisjoint(request.remove)
        assert sorted(request.keep + request.remove) == sorted(m.grant_id for m in mappings)
        assert request.keep == ["g0", "g3", "g7"]

    def test_two_grants_on_one_role_follow_that_role(self):
        mappings = [*MAPPINGS, GrantMapping(grant_id="g3", local_role_id=1)]
        request = compute([1], 5, mappings)
        assert request.keep == ["g1", "g3"]
        assert request.remove == ["g2"]

    def test_identical_inputs_give_identical_json(self):
        first = SyncBatch(users=[compute({2}, 9, MAPPINGS)]).to_json()
        second = SyncBatch(users=[compute(frozenset({2}), 9, MAPPINGS)]).to_json()
        assert first == second

    def test_accepts_any_collection_of_roles(self):
        assert compute([1], 5, MAPPINGS) == compute(frozenset({1}), 5, MAPPINGS)


class TestStripAll:
    def test_removes_every_mapping(self):
        request = strip_all(500, MAPPINGS)
        assert request.keep == []
        assert request.remove == ["g1", "g2"]
        assert request.external_id == 500


class TestWireShape:
    def test_batch_serializes_account_id_key(self):
        body = json.loads(SyncBatch(users=[compute({1}, 500, MAPPINGS)]).to_json())
        assert body == {"users": [{"account_id": 500, "keep": ["g1"], "remove": ["g2"]}]}

    def test_empty_batch_serializes_empty_users(self):
        assert json.loads(SyncBatch(users=[]).to_json()) == {"users": []}
