"""
Unit tests for services/queue_router.py: stage -> queue lookup, role
visibility and default queue seeding.
"""

import pytest

from caseflow.services.models import Queue, WorkItemKind
from caseflow.services.queue_router import (
    DEFAULT_QUEUE_DEFINITIONS,
    STAGE_QUEUE_CODES,
    QueueRouter,
    StaticQueueSource,
    build_default_queues,
    seed_default_queues,
)

from .conftest import LOCATION, OTHER_LOCATION


class TestQueueFor:

    def test_each_case_stage_maps_to_its_queue(self, router):
        for stage, code in STAGE_QUEUE_CODES[WorkItemKind.CASE].items():
            queue = router.queue_for(WorkItemKind.CASE, stage, LOCATION)
            assert queue is not None, stage
            assert queue.code == code
            assert queue.location_id == LOCATION

    def test_ticket_stages(self, router):
        assert router.queue_for(WorkItemKind.TICKET, "support_ticket", LOCATION).code == "TSQ"
        assert router.queue_for(WorkItemKind.TICKET, "diagnosis", LOCATION).code == "TDQ"
        assert router.queue_for(WorkItemKind.TICKET, "resolution", LOCATION) is None

    @pytest.mark.parametrize("stage", ["closure", "on_hold", "rejected"])
    def test_special_stages_have_no_queue(self, router, stage):
        assert router.queue_for(WorkItemKind.CASE, stage, LOCATION) is None

    def test_lookup_is_location_scoped(self, router):
        here = router.queue_for(WorkItemKind.CASE, "enquiry", LOCATION)
        there = router.queue_for(WorkItemKind.CASE, "enquiry", OTHER_LOCATION)
        assert here.id != there.id
        assert router.queue_for(WorkItemKind.CASE, "enquiry", "loc-unknown") is None

    def test_inactive_queue_never_routes(self):
        inactive = Queue(code="ENQ", name="Enquiry", location_id=LOCATION, is_active=False)
        router = QueueRouter(StaticQueueSource([inactive]))
        assert router.queue_for(WorkItemKind.CASE, "enquiry", LOCATION) is None
        assert router.get(inactive.id) == inactive


class TestVisibleQueues:

    def test_sales_admin_sees_sales_and_finance_queues(self, router):
        codes = [q.code for q in router.visible_queues({"Sales Admin"}, LOCATION)]
        assert codes == ["ENQ", "QUO", "POP", "INV"]

    def test_engineer_sees_engineering_queues(self, router):
        codes = {q.code for q in router.visible_queues({"Engineer"}, LOCATION)}
        assert codes == {"EST", "PEN", "GRN", "MFG", "TSQ", "TDQ"}

    def test_roles_union(self, router):
        codes = {q.code for q in router.visible_queues({"Sales Admin", "User"}, LOCATION)}
        assert codes == {"ENQ", "QUO", "POP", "INV", "GRN"}

    def test_no_roles_sees_nothing(self, router):
        assert router.visible_queues(set(), LOCATION) == []

    def test_all_locations_when_unscoped(self, router):
        queues = router.visible_queues({"Director"})
        assert len(queues) == 2 * len(DEFAULT_QUEUE_DEFINITIONS)

    def test_is_visible(self, router):
        queue = router.queue_for(WorkItemKind.CASE, "estimation", LOCATION)
        assert router.is_visible(queue, ["Engineer"])
        assert not router.is_visible(queue, ["Sales Admin"])


class TestSeeding:

    @pytest.mark.asyncio
    async def test_seed_is_idempotent(self):
        source = StaticQueueSource()
        created = await seed_default_queues(source, [LOCATION, OTHER_LOCATION])
        assert created == 2 * len(DEFAULT_QUEUE_DEFINITIONS)

        again = await seed_default_queues(source, [LOCATION, OTHER_LOCATION])
        assert again == 0
        assert len(source.all()) == created

    @pytest.mark.asyncio
    async def test_seed_keeps_existing_queue(self):
        custom = Queue(code="ENQ", name="Custom Enquiry", location_id=LOCATION, sla_hours=12)
        source = StaticQueueSource([custom])
        await seed_default_queues(source, [LOCATION])
        assert source.find("ENQ", LOCATION).name == "Custom Enquiry"

    def test_default_sla_hours(self):
        sla = {q.code: q.sla_hours for q in build_default_queues(LOCATION)}
        assert sla["ENQ"] == 24
        assert sla["EST"] == 48
        assert sla["PEN"] == 72
        assert sla["MFG"] == 168

    def test_duplicate_code_per_location_rejected(self):
        source = StaticQueueSource(build_default_queues(LOCATION))
        with pytest.raises(ValueError):
            source.add(Queue(code="ENQ", name="Second Enquiry", location_id=LOCATION))
