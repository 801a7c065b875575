"""End-to-end: signed webhook -> enrollment -> scheduled runs -> dispatcher passes."""

import json
import time
from datetime import timedelta

from membermail.services.signatures import sign
from membermail.supabase_client import parse_iso
from membermail.tests.conftest import (
    START,
    WEBHOOK_SECRET,
    make_campaign,
    make_member,
    make_sequence,
    make_step,
)


def _seed_welcome_flow(fake_db):
    seq = make_sequence(company_id="C", trigger_event="membership_went_valid", status="active")
    campaign_a = make_campaign(id=10, send_mode="automation", automation_sequence_id=seq["id"])
    campaign_b = make_campaign(id=11, send_mode="automation", automation_sequence_id=seq["id"])
    step_a = make_step(sequence_id=seq["id"], campaign_id=10, position=1,
                       delay_value=0, delay_unit="minutes")
    step_b = make_step(sequence_id=seq["id"], campaign_id=11, position=2,
                       delay_value=1, delay_unit="days")
    fake_db.store["automation_sequences"].append(seq)
    fake_db.store["campaigns"].extend([campaign_a, campaign_b])
    fake_db.store["automation_steps"].extend([step_a, step_b])
    fake_db.store["members"].append(make_member(company_id="C", platform_member_id="M"))
    return seq, step_a, step_b


class TestWelcomeFlow:

    def test_two_step_sequence(self, client, services, fake_db, sender, clock):
        seq, step_a, step_b = _seed_welcome_flow(fake_db)
        raw = json.dumps({
            "action": "membership.went.valid",
            "data": {"company_id": "C", "user_id": "M"},
        })

        resp = client.post(
            "/webhooks/whop",
            content=raw.encode(),
            headers={"X-Whop-Signature": sign(raw, WEBHOOK_SECRET, int(time.time()))},
        )
        assert resp.status_code == 200
        services.triggers.drain()

        [enrollment] = fake_db.store["automation_enrollments"]
        assert (enrollment["sequence_id"], enrollment["member_id"]) == (seq["id"], "M")
        enrolled_at = parse_iso(enrollment["enrolled_at"])
        assert enrolled_at == START

        runs = {r["step_id"]: r for r in fake_db.store["automation_step_runs"]}
        assert parse_iso(runs[step_a["id"]]["scheduled_at"]) == enrolled_at
        assert parse_iso(runs[step_b["id"]]["scheduled_at"]) == enrolled_at + timedelta(seconds=86400)

        first = services.dispatcher.run_pass()
        assert first["sent"] == 1
        assert sender.sent == [(10, "M")]
        assert runs[step_b["id"]]["status"] == "pending"

        clock.advance(hours=25)
        second = services.dispatcher.run_pass()
        assert second["processed"] == 1
        assert sender.sent == [(10, "M"), (11, "M")]

        statuses = {r["step_id"]: r["status"] for r in fake_db.store["automation_step_runs"]}
        assert statuses == {step_a["id"]: "sent", step_b["id"]: "sent"}
        assert fake_db.store["automation_enrollments"][0]["status"] == "completed"
