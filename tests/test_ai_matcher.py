import json
from types import SimpleNamespace
from unittest.mock import MagicMock

import anthropic
import httpx
import pytest

from conftest import CLUB, make_expense, make_tx
from expense_reconciler.ai_matcher import AIExpenseMatcher, build_matching_prompt, parse_analysis
from expense_reconciler.config_loader import AIProviderConfig
from expense_reconciler.errors import AIUnavailableError, PreconditionError
from expense_reconciler.match_store import MatchStore
from expense_reconciler.models import MatchStatus
from expense_reconciler.reference_cache import ReferenceDataCache
from expense_reconciler.state_store import CATEGORIES

PROVIDER = AIProviderConfig(api_key="sk-test", request_delay_seconds=0)


def _answer(expense_id, confidence=80, reasoning="amount and name match"):
    text = "Here is my analysis:\n" + json.dumps({
        "expense_id": expense_id,
        "confidence": confidence,
        "reasoning": reasoning,
        "extracted_info": {"beneficiary": "DUPONT", "keywords": []},
    })
    return SimpleNamespace(content=[SimpleNamespace(type="text", text=text)])


def _client(*answers):
    client = MagicMock()
    client.messages.create.side_effect = list(answers)
    return client


@pytest.fixture
def matches(store):
    return MatchStore(store)


def _txs(n):
    return [make_tx(f"t{i}", "-10", name=f"Member {i}") for i in range(n)]


def _exps(n):
    return [make_expense(f"e{i}", "10", "Member", str(i)) for i in range(n)]


def test_is_available_follows_api_key(matches):
    assert AIExpenseMatcher(PROVIDER, matches).is_available()
    assert not AIExpenseMatcher(AIProviderConfig(api_key="  "), matches).is_available()
    assert not AIExpenseMatcher(AIProviderConfig(api_key=None), matches).is_available()


def test_parse_analysis_rejects_low_confidence_null_and_unknown_ids():
    cands = _exps(2)
    assert parse_analysis('{"expense_id": "e1", "confidence": 49}', cands, 50) is None
    assert parse_analysis('{"expense_id": null, "confidence": 90}', cands, 50) is None
    assert parse_analysis('{"expense_id": "zz", "confidence": 90}', cands, 50) is None
    assert parse_analysis("no json at all", cands, 50) is None
    assert parse_analysis('{"expense_id": "e1", "confidence": "high"}', cands, 50) is None

    got = parse_analysis('```json\n{"expense_id": "e1", "confidence": 91, "reasoning": "ok"}\n```', cands, 50)
    assert got.expense_id == "e1"
    assert got.confidence == 91
    assert got.reasoning == "ok"


def test_prompt_lists_transaction_candidates_and_context():
    tx = make_tx("t1", "-45", name="DUPONT JEAN", communication="remb tournoi")
    prompt = build_matching_prompt(tx, [make_expense("e1", "45", "Jean", "Dupont", description="Tournoi")],
                                   {"categories": ["Travel"]})
    assert "DUPONT JEAN" in prompt
    assert "remb tournoi" in prompt
    assert "ID: e1" in prompt
    assert "Jean Dupont" in prompt
    assert "EXPENSE CATEGORIES" in prompt and "- Travel" in prompt


def test_hybrid_matching_persists_pending_proposals(matches):
    client = _client(_answer("e1"), _answer("e0"))
    matcher = AIExpenseMatcher(PROVIDER, matches, client=client)

    created = matcher.hybrid_matching(CLUB, "alice", _txs(2), _exps(2), limit=5)

    assert [(m.transaction_id, m.expense_id) for m in created] == [("t0", "e1"), ("t1", "e0")]
    assert all(m.status is MatchStatus.PENDING for m in created)
    assert matches.get_matches_stats(CLUB)["pending"] == 2
    assert client.messages.create.call_count == 2


def test_proposed_expense_leaves_the_pool(matches):
    client = _client(_answer("e0"), _answer("e0"), _answer("e1"))
    matcher = AIExpenseMatcher(PROVIDER, matches, client=client)

    created = matcher.hybrid_matching(CLUB, "alice", _txs(3), _exps(2), limit=3)

    # the second answer names an expense already taken: not in its candidate list
    second_prompt = client.messages.create.call_args_list[1].kwargs["messages"][0]["content"]
    assert "ID: e0" not in second_prompt
    expense_ids = [m.expense_id for m in created]
    assert expense_ids == ["e0", "e1"]
    assert len(set(expense_ids)) == len(expense_ids)


def test_limit_caps_provider_calls(matches):
    client = _client(*[_answer(None) for _ in range(10)])
    matcher = AIExpenseMatcher(PROVIDER, matches, client=client)

    matcher.hybrid_matching(CLUB, "alice", _txs(10), _exps(3), limit=3)

    assert client.messages.create.call_count == 3


def test_progress_is_reported_before_each_step(matches):
    client = _client(_answer(None), _answer(None), _answer(None))
    matcher = AIExpenseMatcher(PROVIDER, matches, client=client)
    seen = []

    matcher.hybrid_matching(CLUB, "alice", _txs(3), _exps(1), limit=3,
                            on_progress=lambda cur, total, msg: seen.append((cur, total)))

    assert seen == [(1, 3), (2, 3), (3, 3)]


def test_provider_failure_skips_transaction(matches):
    request = httpx.Request("POST", "https://api.anthropic.com/v1/messages")
    client = _client(
        anthropic.APITimeoutError(request=request),
        _answer("e1"),
        SimpleNamespace(content=[]),
        _answer("e0", confidence=20),
    )
    matcher = AIExpenseMatcher(PROVIDER, matches, client=client)

    created = matcher.hybrid_matching(CLUB, "alice", _txs(4), _exps(2), limit=4)

    assert [(m.transaction_id, m.expense_id) for m in created] == [("t1", "e1")]
    assert client.messages.create.call_count == 4


def test_transactions_with_pending_match_are_skipped(matches):
    matches.save_match(CLUB, "t0", "e9", 70, "", "ai")
    client = _client(_answer("e0"))
    matcher = AIExpenseMatcher(PROVIDER, matches, client=client)

    created = matcher.hybrid_matching(CLUB, "alice", _txs(2), _exps(1), limit=1)

    assert [m.transaction_id for m in created] == ["t1"]
    assert client.messages.create.call_count == 1


def test_preconditions_raise_before_any_call(matches):
    client = _client()
    with pytest.raises(AIUnavailableError):
        AIExpenseMatcher(AIProviderConfig(api_key=""), matches, client=client).hybrid_matching(
            CLUB, "alice", _txs(1), _exps(1), limit=1)
    matcher = AIExpenseMatcher(PROVIDER, matches, client=client)
    with pytest.raises(PreconditionError):
        matcher.hybrid_matching("", "alice", _txs(1), _exps(1), limit=1)
    with pytest.raises(PreconditionError):
        matcher.hybrid_matching(CLUB, "", _txs(1), _exps(1), limit=1)
    with pytest.raises(PreconditionError):
        matcher.hybrid_matching(CLUB, "alice", _txs(1), _exps(1), limit=0)
    client.messages.create.assert_not_called()


def test_analyze_single_transaction_uses_reference_context(store, matches):
    store.put(CLUB, CATEGORIES, "travel", {"label": "Travel"})
    client = _client(_answer("e0", confidence=88))
    matcher = AIExpenseMatcher(PROVIDER, matches, client=client, reference_cache=ReferenceDataCache(store))

    m = matcher.analyze_single_transaction(CLUB, "alice", _txs(1)[0], _exps(1))

    assert m.expense_id == "e0"
    assert m.confidence == 88
    kwargs = client.messages.create.call_args.kwargs
    assert kwargs["model"] == PROVIDER.model
    assert "- Travel" in kwargs["messages"][0]["content"]
