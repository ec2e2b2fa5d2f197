from cgistudio import metrics


def test_failure_rate_per_stage():
    for _ in range(4):
        metrics.inc_counter("stage.image_composition.attempts")
    metrics.inc_counter("stage.image_composition.failures")
    metrics.inc_counter("stage.prompt_enhancement.attempts")

    rates = metrics.get_snapshot()["failure_rate_pct"]

    assert rates == {"image_composition": 25.0, "prompt_enhancement": 0.0}


def test_spend_accumulates_across_runs():
    metrics.record_spend([("prompt_enhancement", 100), ("image_composition", 3900)])
    metrics.record_spend([("prompt_enhancement", 100)])

    assert metrics.get_snapshot()["spend_millicents"] == {
        "prompt_enhancement": 200,
        "image_composition": 3900,
    }


def test_latency_samples_are_bounded():
    for i in range(metrics.MAX_SAMPLES + 20):
        metrics.record_latency("video_generation", float(i))

    summary = metrics.get_snapshot()["latency"]["video_generation"]

    assert summary["count"] == metrics.MAX_SAMPLES
    assert summary["max"] == float(metrics.MAX_SAMPLES + 19)


def test_errors_grouped_by_stage_and_type():
    metrics.record_error("video_generation", "ProviderTaskFailed", "boom", "proj-1")
    metrics.record_error("video_generation", "ProviderTaskFailed", "boom again", "proj-2")
    metrics.record_error("image_composition", "NoImageProduced", "x" * 500)

    snapshot = metrics.get_snapshot()

    assert snapshot["error_patterns"] == {
        "video_generation:ProviderTaskFailed": 2,
        "image_composition:NoImageProduced": 1,
    }
    assert len(snapshot["recent_errors"][-1]["message"]) == 300


def test_reset_clears_everything():
    metrics.inc_counter("runs.completed")
    metrics.set_gauge("runs.active", 2)
    metrics.record_spend([("audio_augmentation", 3500)])

    metrics.reset()
    snapshot = metrics.get_snapshot()

    assert snapshot["counters"] == {}
    assert snapshot["gauges"] == {}
    assert snapshot["spend_millicents"] == {}
