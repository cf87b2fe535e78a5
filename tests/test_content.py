"""
Content blob and digest commitment tests.

Run with: pytest tests/test_content.py -v
"""

import pytest

from bountiful import content as content_model
from bountiful.commitments import (
    JudgmentDocument,
    SubmissionDocument,
    fold_documents,
    fold_root,
    leaf_digest,
    metadata_digest,
)
from bountiful.content import HEADER_SIZE, ZERO_ROOT, BountyContent, ContentRoots, RootSlot


S = b"\x11" * 32
J = b"\x22" * 32
M = b"\x33" * 32


class TestContentLayout:
    """Fixed-offset layout of the content blob."""

    def test_encode_places_roots_at_fixed_offsets(self):
        blob = content_model.encode(ContentRoots(S, J, M), b'{"title":"x"}')
        assert blob[0:32] == S
        assert blob[32:64] == J
        assert blob[64:96] == M
        assert blob[96:] == b'{"title":"x"}'

    def test_decode_splits_roots_and_payload(self):
        blob = S + J + M + b"payload"
        decoded = content_model.decode(blob)
        assert decoded.roots == ContentRoots(S, J, M)
        assert decoded.payload == b"payload"

    def test_short_blob_reads_as_zero_roots(self):
        """Blobs shorter than three digests predate the roots."""
        decoded = content_model.decode(b"legacy free text")
        assert decoded.roots.as_tuple() == (ZERO_ROOT, ZERO_ROOT, ZERO_ROOT)
        assert decoded.payload == b"legacy free text"

    def test_exactly_header_size_has_empty_payload(self):
        decoded = content_model.decode(S + J + M)
        assert decoded.payload == b""
        assert decoded.roots.metadata == M

    def test_empty_blob(self):
        decoded = content_model.decode(b"")
        assert decoded.payload == b""
        assert decoded.roots == ContentRoots()

    def test_bounty_content_encode_matches_module_encode(self):
        bc = BountyContent(roots=ContentRoots(S, J, M), payload=b"p")
        assert bc.encode() == content_model.encode(bc.roots, b"p")

    def test_roots_reject_wrong_digest_size(self):
        with pytest.raises(ValueError):
            ContentRoots(submissions=b"\x01" * 31)


class TestRootReplacement:
    """replace() must preserve everything except the targeted slot."""

    @pytest.mark.parametrize("slot", list(RootSlot))
    def test_replace_changes_only_the_slot(self, slot):
        blob = content_model.encode(ContentRoots(S, J, M), b"payload bytes")
        new_digest = b"\x99" * 32
        out = content_model.replace(blob, slot, new_digest)

        assert content_model.decode(out).roots.get(slot) == new_digest
        assert content_model.decode(out).payload == b"payload bytes"
        assert content_model.changed_slots(blob, out) == {slot}
        assert content_model.only_root_changed(blob, out, slot)

    def test_replace_on_short_blob_promotes_to_full_layout(self):
        out = content_model.replace(b"old", RootSlot.SUBMISSIONS, S)
        assert len(out) == HEADER_SIZE + 3
        assert content_model.decode(out).payload == b"old"

    def test_replace_rejects_bad_digest(self):
        with pytest.raises(ValueError):
            content_model.replace(S + J + M, RootSlot.JUDGMENTS, b"short")

    def test_two_changed_roots_are_not_exclusive(self):
        blob = content_model.encode(ContentRoots(S, J, M), b"")
        out = content_model.replace(content_model.replace(blob, RootSlot.SUBMISSIONS, M), RootSlot.JUDGMENTS, S)
        assert not content_model.only_root_changed(blob, out, RootSlot.SUBMISSIONS)

    def test_payload_change_needs_permission(self):
        blob = content_model.encode(ContentRoots(S, J, M), b"one")
        out = content_model.replace(content_model.replace_payload(blob, b"two"), RootSlot.METADATA, S)
        assert not content_model.only_root_changed(blob, out, RootSlot.METADATA)
        assert content_model.only_root_changed(blob, out, RootSlot.METADATA, payload_may_change=True)

    def test_unchanged_blob_changes_no_slot(self):
        blob = content_model.encode(ContentRoots(S, J, M), b"")
        assert content_model.changed_slots(blob, blob) == set()
        assert not content_model.only_root_changed(blob, blob, RootSlot.METADATA)


class TestCommitments:
    """Folded accumulators over off-ledger documents."""

    def test_fold_is_order_sensitive(self):
        a, b = {"n": 1}, {"n": 2}
        assert fold_documents([a, b]) != fold_documents([b, a])

    def test_fold_documents_matches_manual_folding(self):
        docs = [{"n": 1}, {"n": 2}]
        manual = fold_root(fold_root(ZERO_ROOT, leaf_digest(docs[0])), leaf_digest(docs[1]))
        assert fold_documents(docs) == manual

    def test_leaf_and_metadata_digests_are_domain_separated(self):
        doc = {"title": "same"}
        assert leaf_digest(doc) != metadata_digest(doc)

    def test_fold_rejects_non_digest_inputs(self):
        with pytest.raises(ValueError):
            fold_root(b"\x00" * 31, ZERO_ROOT)

    def test_submission_digest_depends_on_content(self):
        one = SubmissionDocument(0, "addr", "https://example.org/1", 10)
        two = SubmissionDocument(0, "addr", "https://example.org/2", 10)
        assert one.digest() != two.digest()
        assert one.digest() == SubmissionDocument(0, "addr", "https://example.org/1", 10).digest()

    def test_judgment_document_omits_empty_optionals(self):
        doc = JudgmentDocument(submission_id=3, approved=False, judged_at_height=50).to_dict()
        assert "notes" not in doc
        assert "winner_address" not in doc
        assert doc["type"] == "BountyJudgment"

    def test_canonical_json_rejects_floats(self):
        with pytest.raises(ValueError):
            leaf_digest({"amount": 1.5})
