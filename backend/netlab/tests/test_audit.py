from datetime import timedelta
from uuid import UUID

from netlab import audit, models
from netlab.services import reaper


def test_reservation_lifecycle_is_audited(client, auth_headers, make_lab, book, clock, db):
    headers, user_id = auth_headers()
    reservation = book(headers, make_lab(0), start_in=10).json()["reservation"]
    clock.advance(timedelta(minutes=30))
    client.post(f"/api/reservations/{reservation['id']}/stop", headers=headers)

    actions = [log.action for log in audit.actions_for(db, UUID(reservation["id"]))]
    assert {"reservation.create", "lab.start"} == set(actions[:2])
    assert actions[-1] == "lab.stop"

    created = audit.actions_for(db, UUID(reservation["id"]), action="reservation.create")[0]
    assert created.user_id == UUID(user_id)
    assert created.details["lab_ref"] == reservation["lab_ref"]


def test_system_actions_have_no_actor(client, auth_headers, make_lab, book, clock, db):
    headers, _ = auth_headers()
    reservation = book(headers, make_lab(20000), start_in=120).json()["reservation"]
    clock.advance(timedelta(minutes=16))
    reaper.sweep(db, clock=clock)
    db.commit()

    expired = audit.actions_for(db, UUID(reservation["id"]), action="reservation.expire")
    assert len(expired) == 1
    assert expired[0].user_id is None
    assert expired[0].details == {"grace_minutes": 15}
    assert db.query(models.AuditLog).filter_by(action="reservation.expire").count() == 1
