import pytest

from blockgate.service.job_detection import detect_async_job, extract_usage, normalize_progress


@pytest.mark.parametrize(
    "value, expected",
    [(-3, 0.0), (0, 0.0), (0.4, 0.4), (1, 1.0), (45, 0.45), (100, 1.0), (250, 1.0)],
)
def test_normalize_progress(value, expected):
    assert normalize_progress(value) == pytest.approx(expected)


def test_running_status_is_detected():
    job = detect_async_job({"status": "Processing", "progress": 45, "etaMs": "1200"})
    assert job is not None
    assert job.progress == pytest.approx(0.45)
    assert job.current_step == "Status: processing"
    assert job.estimated_completion_ms == 1200


def test_job_id_with_async_message():
    job = detect_async_job({"jobId": "j-1", "message": "Render queued for processing"})
    assert job is not None
    assert job.current_step == "Render queued for processing"
    assert job.progress is None


def test_job_id_without_async_message_is_complete():
    assert detect_async_job({"jobId": "j-1", "message": "Done"}) is None


def test_terminal_status_is_complete():
    assert detect_async_job({"status": "succeeded", "jobId": "j-1"}) is None


def test_non_mapping_output():
    assert detect_async_job(None) is None
    assert detect_async_job(["running"]) is None


def test_null_status_falls_through_to_next_key():
    job = detect_async_job({"status": None, "state": "pending"})
    assert job is not None
    assert job.current_step == "Status: pending"


def test_usage_from_tokens():
    usage = extract_usage({"tokens": {"total": 42}, "cost": {"total": 0.5}})
    assert usage == {"tokensUsed": 42, "apiCallsMade": 1, "creditsConsumed": 0.5}


def test_usage_prefers_explicit_counters():
    usage = extract_usage(
        {"usage": {"total_tokens": 7, "apiCallsMade": 3, "creditsConsumed": 2}}
    )
    assert usage == {"tokensUsed": 7, "apiCallsMade": 3, "creditsConsumed": 2}


def test_usage_defaults():
    assert extract_usage({"content": "hi"}) == {
        "tokensUsed": None,
        "apiCallsMade": 1,
        "creditsConsumed": None,
    }
    assert extract_usage({"tokens": {"total": 0}})["tokensUsed"] is None
