"""DedupLedger のユニットテスト"""

from concurrent.futures import ThreadPoolExecutor

from halloo.services.dedup_ledger import DedupLedger, message_key, profile_key


def test_keys_are_owner_scoped():
    assert profile_key("uid-1", "+15551234567") == "profile:uid-1/+15551234567"
    assert message_key("uid-1", "SM1") == "message:uid-1/SM1"
    assert profile_key("uid-1", "+15551234567") != profile_key("uid-2", "+15551234567")


def test_claim_only_once():
    ledger = DedupLedger()
    assert ledger.claim("k")
    assert not ledger.claim("k")
    assert ledger.seen("k")


def test_release_allows_reclaim():
    """書き込み失敗で解放したキーは再試行で確保できる"""
    ledger = DedupLedger()
    ledger.claim("k")
    ledger.release("k")
    assert not ledger.seen("k")
    assert ledger.claim("k")


def test_release_unknown_key_is_noop():
    ledger = DedupLedger()
    ledger.release("missing")
    assert len(ledger) == 0


def test_mark_seen_blocks_claim():
    ledger = DedupLedger()
    ledger.mark_seen("k")
    assert not ledger.claim("k")


def test_prime_returns_added_count():
    ledger = DedupLedger()
    ledger.mark_seen("a")
    assert ledger.prime(["a", "b", "c"]) == 2
    assert len(ledger) == 3


def test_concurrent_claim_single_winner():
    """同じキーを同時に確保しても成功するのは1回だけ"""
    ledger = DedupLedger()
    with ThreadPoolExecutor(max_workers=16) as pool:
        results = list(pool.map(lambda _: ledger.claim("profile:uid/+1"), range(200)))
    assert results.count(True) == 1
