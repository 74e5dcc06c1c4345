"""Per-contract activity stream."""
from services import activity_log
from services.contract_lock import locked_contract


class TestActivityLog:

     def test_sequence_is_contiguous_from_one(self, db, helpers):
          contract = helpers.create_contract(amounts=("100.00", "200.00"))
          helpers.release(contract.milestones[0].id)

          seqs = [e.seq for e in activity_log.read_from(db, contract.id)]

          assert seqs == list(range(1, activity_log.last_seq(db, contract.id) + 1))

     def test_streams_are_independent_per_contract(self, db, helpers):
          first = helpers.create_contract()
          second = helpers.create_contract()
          helpers.fund(first.milestones[0].id)

          assert activity_log.last_seq(db, first.id) == 2
          assert activity_log.last_seq(db, second.id) == 1

     def test_read_from_skips_earlier_events(self, db, helpers):
          contract = helpers.create_contract()
          helpers.fund(contract.milestones[0].id)
          helpers.submit(contract.milestones[0].id)

          events = list(activity_log.read_from(db, contract.id, since_seq=1))

          assert [e.seq for e in events] == [2, 3]
          assert [e.kind for e in events] == [activity_log.MILESTONE_FUNDED, activity_log.DELIVERABLE_SUBMITTED]

     def test_read_past_end_is_empty(self, db, helpers):
          contract = helpers.create_contract()

          assert list(activity_log.read_from(db, contract.id, since_seq=10)) == []

     def test_upper_bound_is_fixed_when_iteration_starts(self, db, helpers):
          contract = helpers.create_contract()
          helpers.fund(contract.milestones[0].id)

          stream = activity_log.read_from(db, contract.id)
          first = next(stream)
          with locked_contract(db, contract.id):
               activity_log.append(db, contract.id, "Note", {"text": "appended while reading"})
          rest = list(stream)

          assert first.seq == 1
          assert [e.seq for e in rest] == [2]
          assert activity_log.last_seq(db, contract.id) == 3

     def test_reads_in_batches(self, db, helpers, monkeypatch):
          monkeypatch.setattr(activity_log, "READ_BATCH_SIZE", 2)
          contract = helpers.create_contract()
          with locked_contract(db, contract.id):
               for i in range(4):
                    activity_log.append(db, contract.id, "Note", {"i": i})

          seqs = [e.seq for e in activity_log.read_from(db, contract.id)]

          assert seqs == [1, 2, 3, 4, 5]

     def test_payload_snapshots_new_state(self, db, helpers):
          contract = helpers.create_contract()
          helpers.fund(contract.milestones[0].id)

          funded = [e for e in activity_log.read_from(db, contract.id) if e.kind == activity_log.MILESTONE_FUNDED][0]

          assert funded.payload["status"] == "FUNDED"
          assert funded.payload["amount"] == "500.00"
          assert funded.payload["capture_ref"] == f"CAP-{contract.milestones[0].id}"

