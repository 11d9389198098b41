from types import SimpleNamespace

from exam_analytics.utils.attempt_analytics import (
    aggregate_subject_analytics,
    build_subject_analytics,
    build_time_analytics,
    question_visit_stats,
    subject_breakdown,
    time_bucket,
)


def _q(qid, subject, chapter=None, qtype="single"):
    return SimpleNamespace(id=qid, subject=subject, chapter=chapter, topic=None, question_type=qtype)


def _a(qid, index, correct, time_spent):
    return {"question_id": qid, "answer_option_index": index, "numerical_answer": None, "time_spent": time_spent, "is_correct": correct}


def test_time_buckets():
    assert time_bucket(0) == "less_than_30_sec"
    assert time_bucket(30) == "between_30_to_60_sec"
    assert time_bucket(120) == "between_1_to_2_min"
    assert time_bucket(121) == "more_than_2_min"


def test_build_time_analytics():
    out = build_time_analytics([_a(1, 0, True, 10), _a(2, 1, False, 90)], 200)
    assert out["total_time_spent"] == 200
    assert out["average_time_per_question"] == 100
    assert out["question_time_distribution"]["less_than_30_sec"] == [1]
    assert out["question_time_distribution"]["between_1_to_2_min"] == [2]
    assert build_time_analytics([], 50)["average_time_per_question"] == 0


def test_subject_analytics_weak_and_strong_chapters():
    questions = {1: _q(1, "Physics", "Optics"), 2: _q(2, "Physics", "Optics"), 3: _q(3, "Physics", "Waves")}
    answers = [_a(1, 0, True, 10), _a(2, 0, True, 20), _a(3, 1, False, 30)]
    out = build_subject_analytics(answers, questions, {"correct": 4, "incorrect": -1})
    physics = out["Physics"]
    assert physics["questions_attempted"] == 3
    assert physics["score_obtained"] == 7
    assert physics["strong_topics"] == ["Optics"]
    assert physics["weak_topics"] == ["Waves"]
    assert physics["improvement_areas"][0]["topic"] == "Waves"
    assert physics["average_time_per_question"] == 20


def test_subject_breakdown_walks_test_questions():
    questions = {1: _q(1, "Physics"), 2: _q(2, "Chemistry"), 3: _q(3, "Physics")}
    answers = [_a(1, 0, True, 10), _a(2, None, False, 5)]
    out = subject_breakdown([1, 2, 3, 99], questions, answers)
    assert out["Physics"] == {"total": 2, "attempted": 1, "correct": 1, "time_spent": 10}
    assert out["Chemistry"] == {"total": 1, "attempted": 0, "correct": 0, "time_spent": 0}


def test_visit_stats_use_earliest_and_latest_visit():
    nav = [
        {"timestamp": 500, "question_id": 1, "action": "visit"},
        {"timestamp": 100, "question_id": 1, "action": "visit"},
        {"timestamp": 300, "question_id": 1, "action": "leave"},
        {"timestamp": 50, "question_id": 2, "action": "visit"},
    ]
    assert question_visit_stats(nav, 1) == {"visits": 2, "first_visit": 100, "last_visit": 500}
    assert question_visit_stats(nav, 3) == {"visits": 0, "first_visit": None, "last_visit": None}


def test_aggregate_subject_analytics_averages_and_unions():
    per_attempt = [
        {"Physics": {"accuracy": 40, "average_time_per_question": 10, "weak_topics": ["Optics"], "strong_topics": []}},
        None,
        {"Physics": {"accuracy": 80, "average_time_per_question": 30, "weak_topics": ["Optics", "Waves"], "strong_topics": ["Heat"]}},
        {"Chemistry": {"accuracy": 100, "average_time_per_question": 5, "weak_topics": [], "strong_topics": ["Bonding"]}},
    ]
    out = aggregate_subject_analytics(per_attempt)
    assert out["Physics"]["total_attempts"] == 2
    assert out["Physics"]["average_accuracy"] == 60
    assert out["Physics"]["average_time_per_question"] == 20
    assert out["Physics"]["weak_topics"] == ["Optics", "Waves"]
    assert out["Physics"]["strong_topics"] == ["Heat"]
    assert out["Chemistry"]["total_attempts"] == 1
