"""Tests for flow persistence and conversation state storage."""

import datetime as dt

import pytest

from cvflow.crud.conversation import (
    cleanup_old_conversations,
    delete_conversation_state,
    list_due_conversations,
    load_conversation_state,
    save_conversation_state,
)
from cvflow.crud.flow import (
    create_flow,
    delete_flow,
    flow_to_document,
    get_flow,
    get_flow_document,
    get_live_flow,
    list_flows,
    load_system_template,
    update_flow,
)
from cvflow.models.conversation import ConversationStatus
from cvflow.schemas.flow import utcnow
from cvflow.services.validation import FlowValidationError, validate_flow
from tests.factories import branching_flow, flow, linear_flow, node


class TestSystemTemplates:
    @pytest.mark.parametrize("flow_id", ["basic_cv_flow", "advanced_cv_flow"])
    def test_bundled_templates_are_valid(self, flow_id):
        doc = load_system_template(flow_id)
        assert doc is not None
        assert doc.id == flow_id
        result = validate_flow(doc)
        assert result.ok, result.to_dict()

    def test_only_system_ids_have_templates(self):
        assert load_system_template("my-flow") is None


class TestFlowCrud:
    @pytest.mark.asyncio
    async def test_create_and_read(self, db_session):
        flow_row = await create_flow(
            db_session, name="Linear", data=linear_flow(), created_by="a@example.com"
        )
        assert flow_row.created_by == "a@example.com"
        assert flow_row.data["id"] == flow_row.id

        doc = await get_flow_document(db_session, flow_row.id)
        assert doc.id == flow_row.id
        assert [n.id for n in doc.nodes] == [n["id"] for n in linear_flow()["nodes"]]

    @pytest.mark.asyncio
    async def test_create_rejects_invalid_document(self, db_session):
        with pytest.raises(FlowValidationError):
            await create_flow(
                db_session,
                name="Broken",
                data=flow([node("end", "end")], []),
                created_by="a@example.com",
            )
        assert list(await list_flows(db_session)) == []

    @pytest.mark.asyncio
    async def test_row_id_and_timestamps_win(self, db_session):
        data = linear_flow()
        data["createdAt"] = "2001-01-01T00:00:00Z"
        flow_row = await create_flow(db_session, name="Linear", data=data, created_by="a@example.com", flow_id="row-id")
        doc = flow_to_document(flow_row)
        assert doc.id == "row-id"
        assert doc.created_at.year != 2001

    @pytest.mark.asyncio
    async def test_upsert_creates_on_miss(self, db_session):
        flow_row = await update_flow(db_session, "new-flow", data=branching_flow())
        assert flow_row.created_by == "system"
        assert flow_row.name == "Test flow"
        assert (await get_flow(db_session, "new-flow")) is not None

    @pytest.mark.asyncio
    async def test_update_keeps_unset_fields(self, db_session):
        await create_flow(
            db_session,
            name="Linear",
            description="first",
            data=linear_flow(),
            created_by="a@example.com",
            flow_id="f1",
        )
        updated = await update_flow(db_session, "f1", is_live=True, mapping_config={"fullName": "name"})
        assert updated.name == "Linear"
        assert updated.description == "first"
        assert updated.is_live is True
        assert updated.mapping_config == {"fullName": "name"}
        assert updated.created_by == "a@example.com"

    @pytest.mark.asyncio
    async def test_last_write_wins(self, db_session):
        await update_flow(db_session, "f1", name="One", data=linear_flow())
        await update_flow(db_session, "f1", name="Two", data=branching_flow())
        doc = await get_flow_document(db_session, "f1")
        assert (await get_flow(db_session, "f1")).name == "Two"
        assert doc.get_node("cond") is not None

    @pytest.mark.asyncio
    async def test_list_orders_by_updated_at(self, db_session):
        await update_flow(db_session, "older", data=linear_flow())
        await update_flow(db_session, "newer", data=linear_flow())
        await update_flow(db_session, "older", name="touched")
        assert [f.id for f in await list_flows(db_session)] == ["older", "newer"]

    @pytest.mark.asyncio
    async def test_system_flow_falls_back_to_template(self, db_session):
        doc = await get_flow_document(db_session, "basic_cv_flow")
        assert doc is not None and doc.id == "basic_cv_flow"
        assert await get_flow_document(db_session, "unknown") is None

    @pytest.mark.asyncio
    async def test_upsert_without_data_seeds_system_template(self, db_session):
        await update_flow(db_session, "basic_cv_flow", is_live=True)
        doc = await get_flow_document(db_session, "basic_cv_flow")
        assert validate_flow(doc).ok
        assert [n.id for n in doc.nodes] == [n.id for n in load_system_template("basic_cv_flow").nodes]
        assert (await get_flow(db_session, "basic_cv_flow")).is_live is True

    @pytest.mark.asyncio
    async def test_upsert_without_data_rejects_unknown_flow(self, db_session):
        with pytest.raises(FlowValidationError) as excinfo:
            await update_flow(db_session, "my-flow", name="Mine")
        assert excinfo.value.result.errors[0].code == "missing_data"
        assert await get_flow(db_session, "my-flow") is None

    @pytest.mark.asyncio
    async def test_renamed_row_name_reaches_document(self, db_session):
        await update_flow(db_session, "f1", name="First", data=linear_flow())
        await update_flow(db_session, "f1", name="Renamed")
        doc = await get_flow_document(db_session, "f1")
        assert doc.name == "Renamed"

    @pytest.mark.asyncio
    async def test_live_flow_lookup(self, db_session):
        assert await get_live_flow(db_session) is None
        await update_flow(db_session, "live", data=linear_flow(), is_live=True)
        await update_flow(db_session, "draft", data=linear_flow())
        assert (await get_live_flow(db_session)).id == "live"

        await update_flow(db_session, "live", is_live=False)
        await update_flow(db_session, "draft", name="touched")
        assert (await get_live_flow(db_session)).id == "draft"

    @pytest.mark.asyncio
    async def test_delete(self, db_session):
        await update_flow(db_session, "f1", data=linear_flow())
        assert await delete_flow(db_session, "f1") is True
        assert await delete_flow(db_session, "f1") is False


class TestConversationState:
    @pytest.mark.asyncio
    async def test_save_is_an_upsert(self, db_session):
        await save_conversation_state(
            db_session, session_id="s1", flow_id="f1", current_node_id="q1", bindings={"a": "1"}
        )
        await save_conversation_state(
            db_session,
            session_id="s1",
            flow_id="f1",
            current_node_id="q2",
            bindings={"a": "1", "b": 2},
            status=ConversationStatus.COMPLETED,
        )
        state = await load_conversation_state(db_session, "s1")
        assert state.current_node_id == "q2"
        assert state.bindings == {"a": "1", "b": 2}
        assert state.status == ConversationStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_due_and_cleanup(self, db_session):
        now = utcnow()
        await save_conversation_state(
            db_session,
            session_id="due",
            flow_id="f1",
            current_node_id="w",
            bindings={},
            status=ConversationStatus.WAITING,
            resume_at=now - dt.timedelta(minutes=1),
        )
        await save_conversation_state(
            db_session,
            session_id="later",
            flow_id="f1",
            current_node_id="w",
            bindings={},
            status=ConversationStatus.WAITING,
            resume_at=now + dt.timedelta(hours=1),
        )
        due = await list_due_conversations(db_session, now=now)
        assert [s.session_id for s in due] == ["due"]

        old = await save_conversation_state(
            db_session,
            session_id="old",
            flow_id="f1",
            current_node_id="end",
            bindings={},
            status=ConversationStatus.COMPLETED,
        )
        old.updated_at = now - dt.timedelta(days=45)
        await db_session.commit()

        assert await cleanup_old_conversations(db_session, days=30) == 1
        assert await load_conversation_state(db_session, "old") is None
        assert await load_conversation_state(db_session, "due") is not None
        assert await delete_conversation_state(db_session, "due") is True
