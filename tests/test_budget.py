from __future__ import annotations

import pytest

from cafesum.core.budget import (
    TRUNCATION_MARKER,
    BudgetPolicy,
    ContextBudgetManager,
    ContextOverflowError,
    CorpusSection,
    LadderLevel,
    digest_sections,
    estimate_tokens,
    extract_keywords,
)

CAPABILITY = "test-capability"
RESERVED = 3_000


def manager_with_available(available: int, **policy) -> ContextBudgetManager:
    return ContextBudgetManager(
        {CAPABILITY: available + RESERVED},
        BudgetPolicy(reserved_tokens=RESERVED, **policy),
    )


def section_of_length(label: str, total_chars: int) -> CorpusSection:
    header = f"--- Table {label} ---\n"
    sentence = "participants talked about public transport and green spaces "
    body = (sentence * (total_chars // len(sentence) + 1))[: total_chars - len(header)]
    return CorpusSection(label=label, content=body)


def test_estimate_tokens_rounds_up():
    assert estimate_tokens("") == 0
    assert estimate_tokens("abcd") == 1
    assert estimate_tokens("abcde") == 2


def test_small_corpus_is_sent_in_full():
    manager = manager_with_available(1_000)
    sections = [CorpusSection("1", "alpha"), CorpusSection("2", "delta")]

    outcome = manager.fit(sections, CAPABILITY)

    assert outcome.level is LadderLevel.FULL
    assert outcome.text == "--- Table 1 ---\nalpha\n\n--- Table 2 ---\ndelta"
    assert outcome.estimated == outcome.original_estimate


def test_exceeding_budget_by_one_token_truncates_within_budget():
    available = 9_000
    section = section_of_length("1", available * 4 + 1)
    manager = manager_with_available(available)
    assert estimate_tokens(section.render()) == available + 1

    outcome = manager.fit([section], CAPABILITY)

    assert outcome.level is LadderLevel.TRUNCATED
    assert outcome.estimated <= available
    assert estimate_tokens(outcome.text) <= available
    assert outcome.text.endswith(TRUNCATION_MARKER)


@pytest.mark.parametrize(
    "sections",
    [
        [CorpusSection("1", "word " * 80)],
        [CorpusSection(str(i), ("we agree on more trees " * 3)[:50]) for i in range(1, 4)],
        [section_of_length("1", 200), section_of_length("2", 1_200), section_of_length("3", 5_000)],
    ],
    ids=["single-table", "equal-short-tables", "uneven-tables"],
)
def test_one_token_over_budget_truncates_every_corpus_shape(sections):
    available = estimate_tokens(ContextBudgetManager.render_full(sections)) - 1
    manager = manager_with_available(available)

    outcome = manager.fit(sections, CAPABILITY)

    assert outcome.level is LadderLevel.TRUNCATED
    assert estimate_tokens(outcome.text) <= available
    for section in sections:
        assert section.header in outcome.text


def test_tables_that_fit_whole_carry_no_marker():
    sections = [section_of_length("1", 200), section_of_length("2", 1_200), section_of_length("3", 5_000)]
    available = estimate_tokens(ContextBudgetManager.render_full(sections)) - 1

    outcome = manager_with_available(available).fit(sections, CAPABILITY)

    assert outcome.text.count(TRUNCATION_MARKER) == 1
    assert outcome.text.startswith(sections[0].render() + "\n\n" + sections[1].render())


def test_large_corpus_resolves_to_truncated():
    section = section_of_length("1", 200_000)
    manager = manager_with_available(9_000)
    assert estimate_tokens(section.render()) == 50_000

    outcome = manager.fit([section], CAPABILITY)

    assert outcome.level is LadderLevel.TRUNCATED
    assert outcome.original_estimate == 50_000
    assert outcome.estimated <= 9_000


def test_truncation_cuts_longest_tables_first():
    short = CorpusSection("1", "short table content " * 20)
    long = CorpusSection("2", "long table content " * 2_000)
    manager = manager_with_available(2_000)

    outcome = manager.fit([short, long], CAPABILITY)

    assert outcome.level is LadderLevel.TRUNCATED
    first, second = outcome.text.split("\n\n--- Table 2 ---\n")
    assert first == short.render()
    assert second.endswith(TRUNCATION_MARKER)
    assert outcome.estimated <= 2_000


def test_too_many_tables_for_truncation_fall_back_to_digest():
    sections = [section_of_length(str(i), 4_000) for i in range(1, 41)]
    manager = manager_with_available(600)

    outcome = manager.fit(sections, CAPABILITY)

    assert outcome.level is LadderLevel.SUMMARIZED
    assert outcome.text.startswith("Table 1: ")
    assert len(outcome.text) <= manager.policy.total_digest_chars


def test_minimal_level_reports_counts_only():
    sections = [section_of_length(str(i), 4_000) for i in range(1, 41)]
    manager = manager_with_available(100)

    outcome = manager.fit(sections, CAPABILITY)

    assert outcome.level is LadderLevel.MINIMAL
    assert "40 tables" in outcome.text
    assert "participants" not in outcome.text


def test_refusal_when_nothing_fits():
    sections = [section_of_length("1", 10_000), section_of_length("2", 10_000)]
    manager = manager_with_available(10)

    outcome = manager.fit(sections, CAPABILITY)

    assert outcome.refused
    assert outcome.text == ""
    refusal = outcome.refusal
    assert refusal is not None
    assert refusal.suggestions
    assert refusal.estimated == outcome.original_estimate
    assert refusal.available == 10
    assert refusal.capability_id == CAPABILITY
    with pytest.raises(ContextOverflowError) as excinfo:
        outcome.raise_for_refusal()
    assert excinfo.value.refusal is refusal


def test_prompt_overhead_reduces_available_budget():
    manager = manager_with_available(1_000)

    assert manager.available_tokens(CAPABILITY) == 1_000
    assert manager.available_tokens(CAPABILITY, overhead_text="x" * 400) == 900


def test_unknown_capability_uses_default_limit():
    manager = ContextBudgetManager({}, BudgetPolicy(reserved_tokens=RESERVED), default_limit=12_000)

    assert manager.available_tokens("mystery-model") == 9_000


def test_ladder_is_deterministic():
    sections = [section_of_length(str(i), 6_000) for i in range(1, 6)]
    manager = manager_with_available(3_000)

    first = manager.fit(sections, CAPABILITY)
    second = manager.fit(list(sections), CAPABILITY)

    assert first == second


def test_digest_caps_excerpts_and_lists_keywords():
    section = CorpusSection("3", "gardens gardens gardens funding funding volunteers " * 30)
    policy = BudgetPolicy()

    digest = digest_sections([section], policy)

    assert digest.startswith("Table 3: ")
    assert "Topics: gardens, funding, volunteers" in digest
    assert len(digest) <= policy.table_digest_chars


def test_extract_keywords_skips_stopwords_and_short_words():
    text = "The budget and the budget should they know about parks parks parks 2024"

    assert extract_keywords(text, 3) == ["parks", "budget"]
