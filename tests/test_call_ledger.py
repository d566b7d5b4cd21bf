"""Provider call ledger."""

from kcs.models import ProviderCall
from kcs.services.call_ledger import CallLedger, call_token


def answer(output, provider="mock", model="mock-text"):
    calls = []

    def call():
        calls.append(output)
        return {"output": output, "provider": provider, "model": model}

    return call, calls


def test_token_depends_on_every_part():
    base = call_token("o-1", "story.draft", "story_draft", "prompt", 0)
    assert base == call_token("o-1", "story.draft", "story_draft", "prompt", 0)
    assert base != call_token("o-2", "story.draft", "story_draft", "prompt", 0)
    assert base != call_token("o-1", "story.revise", "story_draft", "prompt", 0)
    assert base != call_token("o-1", "story.draft", "story_critique", "prompt", 0)
    assert base != call_token("o-1", "story.draft", "story_draft", "other", 0)
    assert base != call_token("o-1", "story.draft", "story_draft", "prompt", 1)


def test_same_call_in_one_run_is_made_once(submit, db):
    order_id = submit()
    ledger = CallLedger(db, order_id, "story.draft")
    call, calls = answer("Once upon a time")

    first = ledger.run("story_draft", "prompt", call)
    second = ledger.run("story_draft", "prompt", call)

    assert first == second
    assert calls == ["Once upon a time"]
    assert ledger.hits == 1


def test_recorded_calls_survive_into_the_next_run(submit, db):
    order_id = submit()
    ledger = CallLedger(db, order_id, "story.draft")
    call, _ = answer("first run")
    ledger.run("story_draft", "prompt", call)
    assert ledger.flush() == 1
    db.commit()

    redelivered = CallLedger(db, order_id, "story.draft")
    again, calls = answer("second run")
    result = redelivered.run("story_draft", "prompt", again)

    assert result["output"] == "first run"
    assert calls == []
    assert redelivered.flush() == 0


def test_slots_keep_repeated_prompts_apart(submit, db):
    order_id = submit()
    ledger = CallLedger(db, order_id, "story.interior")
    first, _ = answer("candidate-1")
    second, _ = answer("candidate-2")

    assert ledger.run("interior_candidate", "same prompt", first, slot=0)["output"] == "candidate-1"
    assert ledger.run("interior_candidate", "same prompt", second, slot=1)["output"] == "candidate-2"

    ledger.flush()
    db.commit()
    assert db.query(ProviderCall).filter(ProviderCall.order_id == order_id).count() == 2


def test_flush_after_rollback_re_adds_rows(submit, db):
    order_id = submit()
    ledger = CallLedger(db, order_id, "story.outline")
    call, _ = answer("1. Start")
    ledger.run("story_outline", "prompt", call)

    ledger.flush()
    db.rollback()
    ledger.flush()
    db.commit()

    assert db.query(ProviderCall).filter(ProviderCall.order_id == order_id).count() == 1
