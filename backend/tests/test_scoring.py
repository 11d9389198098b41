from exam_analytics.utils.scoring import (
    compute_percentage,
    compute_score,
    is_answer_correct,
    normalize_correct_options,
    reconcile_answers,
    resolve_marking_scheme,
    score_summary,
)


def _q(correct, qtype="single", numerical=None):
    return {"question_type": qtype, "correct_options": correct, "numerical_answer": numerical}


def _a(qid, index=None, numerical=None):
    return {"question_id": qid, "answer_option_index": index, "numerical_answer": numerical, "time_spent": 10}


def test_correct_options_always_a_list():
    assert normalize_correct_options(None) == []
    assert normalize_correct_options(2) == [2]
    assert normalize_correct_options("1") == [1]
    assert normalize_correct_options([0, 2]) == [0, 2]
    assert normalize_correct_options(["x", 1, True]) == [1]


def test_marking_scheme_defaults_only_missing_entries():
    assert resolve_marking_scheme(None) == {"correct": 5, "incorrect": 0, "unattempted": 0}
    s = resolve_marking_scheme({"correct": 0, "incorrect": -1, "unattempted": None})
    assert s == {"correct": 0, "incorrect": -1, "unattempted": 0}


def test_membership_is_shared_by_single_and_multiple_choice():
    assert is_answer_correct(_q([1]), _a(1, 1))
    assert not is_answer_correct(_q([1]), _a(1, 0))
    assert is_answer_correct(_q([0, 2], "multiple"), _a(1, 2))
    assert not is_answer_correct(_q([0, 2], "multiple"), _a(1, 1))
    # a scalar correct option still works
    assert is_answer_correct(_q(3), _a(1, 3))
    assert not is_answer_correct(_q([1]), _a(1, None))


def test_numerical_answers_use_range_then_exact_value():
    spec = {"exact_value": 9.8, "range": {"min": 9.7, "max": 9.9}}
    assert is_answer_correct(_q([], "numerical", spec), _a(1, numerical=9.7))
    assert is_answer_correct(_q([], "numerical", spec), _a(1, numerical=9.9))
    assert not is_answer_correct(_q([], "numerical", spec), _a(1, numerical=10))
    exact_only = {"exact_value": 2, "range": None}
    assert is_answer_correct(_q([], "numerical", exact_only), _a(1, numerical=2.0))
    assert not is_answer_correct(_q([], "numerical", exact_only), _a(1, numerical=2.1))


def test_reconcile_counts_and_unattempted():
    questions = {1: _q([1]), 2: _q([0, 2], "multiple")}
    rec = reconcile_answers([_a(1, 1), _a(2, 1)], questions, 2)
    assert (rec["correct"], rec["wrong"], rec["unattempted"], rec["attempted"]) == (1, 1, 0, 2)
    assert [a["is_correct"] for a in rec["answers"]] == [True, False]


def test_reconcile_ignores_client_is_correct():
    rec = reconcile_answers([dict(_a(1, 0), is_correct=True)], {1: _q([1])}, 1)
    assert rec["correct"] == 0
    assert rec["answers"][0]["is_correct"] is False


def test_reconcile_drops_unknown_questions(caplog):
    caplog.set_level("WARNING", logger="exam_analytics.scoring")
    rec = reconcile_answers([_a(1, 1), _a(99, 0)], {1: _q([1])}, 1)
    assert rec["dropped"] == [99]
    assert rec["attempted"] == 1
    assert rec["unattempted"] == 0
    assert [a["question_id"] for a in rec["answers"]] == [1]
    assert "answer_dropped" in caplog.text


def test_duplicate_question_ids_count_once():
    rec = reconcile_answers([_a(1, 0), _a(1, 1)], {1: _q([1]), 2: _q([0])}, 2)
    assert rec["attempted"] == 1
    assert rec["correct"] == 1
    assert rec["wrong"] == 0
    assert rec["correct"] + rec["wrong"] <= rec["attempted"]


def test_null_answers_are_unattempted():
    rec = reconcile_answers([_a(1, None)], {1: _q([1]), 2: _q([0])}, 2)
    assert (rec["correct"], rec["wrong"], rec["unattempted"]) == (0, 0, 2)


def test_score_is_plain_weighted_sum():
    scheme = {"correct": 4, "incorrect": -1, "unattempted": 0}
    assert compute_score(1, 1, 0, scheme) == 3
    assert compute_score(1, 0, 1, scheme) == 4
    assert compute_score(0, 3, 0, scheme) == -3
    assert compute_score(2, 0, 0, None) == 10


def test_percentage_falls_back_without_total_marks():
    assert compute_percentage(1, 2, 8, {"correct": 4}) == 50
    assert compute_percentage(1, 4, 0, None) == 25
    assert compute_percentage(0, 0, 0, None) == 0


def test_zero_answer_summary():
    rec = reconcile_answers([], {1: _q([1]), 2: _q([0])}, 2)
    summary = score_summary(rec, 2, 8, {"correct": 4, "incorrect": -1, "unattempted": -0.5})
    assert summary["correct"] == 0
    assert summary["wrong"] == 0
    assert summary["unattempted"] == 2
    assert summary["score"] == -1
