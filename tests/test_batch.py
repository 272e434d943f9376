import os
import threading

import pytest

from refund_agent.domain.errors import DatabaseError, HttpError, OperationCancelled
from refund_agent.domain.models import SUMMARY_MARKER, combine_transcript
from refund_agent.orchestrator.batch import BatchSettings
from refund_agent.orchestrator.transcribe import fallback_transcript


def _row(store, record_id):
    return next(r for r in store.tables["refund_requests"] if r["id"] == record_id)


def test_failing_receipt_does_not_stop_the_batch(store, make_agent, sleeper):
    agent, parts = make_agent(store, failures={"refund_req2.png": HttpError(404)})

    result = agent.process_receipts(["refund_req1.png", "refund_req2.png", "refund_req3.png"])

    report = result["report"]
    assert (report["success"], report["failed"], report["skipped"], report["total"]) == (2, 1, 0, 3)
    assert report["error_summary"] == {"Not found in storage": 1}
    assert result["success"] is False
    assert result["message"] == "Processed 2/3 receipt(s)"
    assert _row(store, 1)["amount"] == 42.0
    assert _row(store, 2)["amount"] is None
    assert _row(store, 3)["amount"] == 42.0
    assert _row(store, 3)["image_url"].endswith("/receipts//refund_req3.png")
    # one delay between neighbours, none before the first item
    assert sleeper.calls == [2.0, 2.0]


def test_duplicate_image_url_retries_with_amount_only(store, make_agent):
    agent, _ = make_agent(store)
    store.update_errors.append(DatabaseError('duplicate key value violates unique constraint "image_url_key"'))

    report = agent.batch.process_receipts(["refund_req1.png"])

    assert report.success == 1
    assert [patch for _, patch, _ in store.updates] == [
        {"amount": 42.0, "image_url": store.public_url("refund_req1.png")},
        {"amount": 42.0},
    ]


def test_other_database_errors_fail_the_item(store, make_agent):
    agent, _ = make_agent(store)
    store.update_errors.append(DatabaseError("permission denied for table refund_requests"))
    report = agent.batch.process_receipts(["refund_req1.png"])
    assert report.failed == 1
    assert len(store.updates) == 1


def test_receipt_without_record_id_updates_by_image_url(store, make_agent):
    agent, _ = make_agent(store)
    _row(store, 4)["image_url"] = store.public_url("scan_of_receipt.png")

    report = agent.batch.process_receipts(["scan_of_receipt.png"])

    assert report.success == 1
    assert _row(store, 4)["amount"] == 42.0


def test_group_pause_replaces_item_delay_at_boundaries(store, make_agent, sleeper):
    settings = BatchSettings(item_delay=2.0, batch_size=2, batch_pause=10.0)
    agent, _ = make_agent(store, settings=settings)
    agent.batch.process_receipts([f"refund_req{i}.png" for i in range(1, 6)])
    assert sleeper.calls == [2.0, 10.0, 2.0, 10.0]


def test_progress_is_reported_per_item(store, make_agent):
    agent, parts = make_agent(store)
    seen = []
    parts.batch.on_progress = seen.append
    parts.batch.process_receipts(["refund_req1.png", "refund_req2.png"])
    assert [(p["done"], p["total"]) for p in seen] == [(1, 2), (2, 2)]
    assert seen[-1]["eta"] == 0.0


def test_cancellation_stops_before_next_item(store, make_agent):
    agent, parts = make_agent(store)
    cancel = threading.Event()
    parts.batch.on_progress = lambda p: cancel.set()
    with pytest.raises(OperationCancelled):
        parts.batch.process_receipts(["refund_req1.png", "refund_req2.png"], cancel=cancel)
    assert _row(store, 1)["amount"] == 42.0
    assert _row(store, 2)["amount"] is None


def test_status_tracking_records_outcomes(store, make_agent):
    settings = BatchSettings(item_delay=0.0, track_status=True)
    agent, _ = make_agent(store, settings=settings, failures={"refund_req2.png": HttpError(404)})

    agent.batch.process_receipts(["refund_req1.png", "refund_req2.png"])

    ok, bad = _row(store, 1), _row(store, 2)
    assert ok["status"] == "complete"
    assert ok["processing_stage"] is None
    assert ok["processing_time_seconds"] >= 0
    assert ok["error_message"] is None
    assert bad["status"] == "failed"
    assert "404" in bad["error_message"]
    assert bad["processing_stage"] == "extracting"


def test_status_tracking_off_by_default(store, make_agent):
    agent, _ = make_agent(store)
    agent.batch.process_receipts(["refund_req1.png"])
    assert "status" not in _row(store, 1)


def _with_audio(store):
    _row(store, 2)["audio_url"] = "https://host/audio//voice2.mp3"
    _row(store, 4)["audio_url"] = "https://host/audio/voice4.wav"
    _row(store, 5)["audio_url"] = "https://host/audio/voice5.mp3"
    _row(store, 5)["summary"] = "already done"
    _row(store, 6)["audio_url"] = ""


def test_pending_audio_excludes_summarized_and_blank_rows(store, make_agent):
    _with_audio(store)
    agent, _ = make_agent(store)
    assert [r["id"] for r in agent.batch.pending_audio()] == [2, 4]


def test_audio_rows_are_transcribed_summarized_and_cleaned_up(store, make_agent, sleeper):
    _with_audio(store)
    agent, parts = make_agent(store, chat_replies=["Customer wants a refund for order 77."])

    result = agent.process_audio()

    assert result["success"] is True
    assert result["report"]["success"] == 2
    expected = combine_transcript("I want a refund for order 77.", "Customer wants a refund for order 77.")
    assert _row(store, 2)["summary"] == expected
    assert _row(store, 4)["summary"] == expected
    assert _row(store, 5)["summary"] == "already done"
    assert parts.fetcher.written
    assert not any(os.path.exists(p) for p in parts.fetcher.written)
    assert [os.path.basename(p) for p in parts.fetcher.written] == ["audio_2.mp3", "audio_4.wav"]
    assert sleeper.calls == [1.0, 2.0, 1.0]


def test_row_summarized_mid_batch_is_skipped(store, make_agent):
    _with_audio(store)
    agent, parts = make_agent(store, chat_replies=["Short summary."])

    def finish_row_4(progress):
        _row(store, 4)["summary"] = "written elsewhere"

    parts.batch.on_progress = finish_row_4
    result = agent.process_audio()

    report = result["report"]
    assert (report["success"], report["skipped"], report["failed"]) == (1, 1, 0)
    assert result["message"] == "Processed 1/1 audio file(s)"
    assert _row(store, 4)["summary"] == "written elsewhere"
    assert len(parts.audio.audio_calls) == 1


def test_single_mode_processes_first_pending_row(store, make_agent):
    _with_audio(store)
    agent, _ = make_agent(store, chat_replies=["Short summary."])
    result = agent.process_audio(single=True)
    assert result["report"]["total"] == 1
    assert SUMMARY_MARKER in _row(store, 2)["summary"]
    assert _row(store, 4)["summary"] is None


def test_transcription_outage_still_saves_fallback_content(store, make_agent):
    _row(store, 3)["audio_url"] = "https://host/audio/voice3.mp3"
    agent, _ = make_agent(store, chat_replies=["Summary."], transcripts=[RuntimeError("429 quota exceeded")])
    report = agent.batch.process_audio()
    assert report.success == 1
    assert report.results[0].used_fallback is True
    assert _row(store, 3)["summary"] == combine_transcript(fallback_transcript(3), "Summary.")


def test_fatal_transcription_error_fails_row_and_removes_temp_file(store, make_agent):
    _row(store, 3)["audio_url"] = "https://host/audio/voice3.mp3"
    agent, parts = make_agent(store, transcripts=[HttpError(401, "invalid api key")])
    report = agent.batch.process_audio()
    assert report.failed == 1
    assert report.results[0].identifier == "refund_request 3"
    assert _row(store, 3)["summary"] is None
    assert not any(os.path.exists(p) for p in parts.fetcher.written)


def test_audio_without_configured_models_fails_each_row(store, make_agent):
    _row(store, 3)["audio_url"] = "https://host/audio/voice3.mp3"
    agent, parts = make_agent(store)
    parts.batch.transcriber = None
    report = parts.batch.process_audio()
    assert report.failed == 1
    assert "not configured" in report.results[0].error


def test_failed_summary_recheck_fails_only_that_row(store, make_agent, monkeypatch):
    _with_audio(store)
    _row(store, 7)["audio_url"] = "https://host/audio/voice7.mp3"
    agent, _ = make_agent(store, chat_replies=["Short summary."])
    select = store.select

    def flaky_select(table, filters=None, **kwargs):
        if kwargs.get("columns") == "id,summary" and filters[0].value == 4:
            raise DatabaseError("connection reset by peer")
        return select(table, filters, **kwargs)

    monkeypatch.setattr(store, "select", flaky_select)
    report = agent.batch.process_audio()

    assert (report.success, report.failed, report.total) == (2, 1, 3)
    assert report.results[1].error == "connection reset by peer"
    assert _row(store, 4)["summary"] is None
    assert SUMMARY_MARKER in _row(store, 7)["summary"]
