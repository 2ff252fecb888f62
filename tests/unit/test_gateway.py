# =============================================================================
# tests/unit/test_gateway.py
# Unit Tests for SupabaseGateway
# =============================================================================

from unittest.mock import MagicMock

import httpx
import pytest
from postgrest.exceptions import APIError

from school_core.config import SyncSettings
from school_core.data.gateway import SupabaseGateway, classify_api_error
from school_core.errors import AuthorizationError, NetworkError, NotFoundError, ValidationError
from school_core.sync import QueryKey


def api_error(code, message="error", details=None):
    return APIError({"code": code, "message": message, "details": details, "hint": None})


@pytest.fixture
def settings():
    return SyncSettings(supabase_url="https://demo.supabase.co", supabase_key="anon", page_size=2)


@pytest.fixture
def gateway(mock_supabase, settings):
    return SupabaseGateway(mock_supabase, settings, credentials=lambda: "user-token")


def respond(query_builder, *pages):
    query_builder.execute.side_effect = [MagicMock(data=page) for page in pages]


class TestGatewayReads:

    @pytest.mark.asyncio
    async def test_list_pages_past_page_size(self, gateway, mock_supabase, query_builder):
        respond(query_builder, [{"id": 1}, {"id": 2}], [{"id": 3}])

        rows = await gateway.list("students")

        assert [r["id"] for r in rows] == [1, 2, 3]
        assert [c.args for c in query_builder.range.call_args_list] == [(0, 1), (2, 3)]
        mock_supabase.table.assert_called_with("students")

    @pytest.mark.asyncio
    async def test_list_applies_filters_and_order(self, gateway, query_builder):
        respond(query_builder, [])

        await gateway.list("attendance", {"class_id": "c1", "date": "2024-05-01"})

        query_builder.eq.assert_any_call("class_id", "c1")
        query_builder.eq.assert_any_call("date", "2024-05-01")
        query_builder.order.assert_called_once_with("student_id", desc=False)

    @pytest.mark.asyncio
    async def test_list_honours_limit(self, gateway, query_builder):
        respond(query_builder, [{"id": 1}])

        rows = await gateway.recent_announcements(limit=1)

        assert rows == [{"id": 1}]
        query_builder.range.assert_called_once_with(0, 0)
        query_builder.order.assert_called_once_with("created_at", desc=True)

    @pytest.mark.asyncio
    async def test_credentials_attached(self, gateway, mock_supabase, query_builder):
        respond(query_builder, [])
        await gateway.list("classes")
        mock_supabase.postgrest.auth.assert_called_with("user-token")

    @pytest.mark.asyncio
    async def test_signed_out_falls_back_to_anon_key(self, mock_supabase, settings, query_builder):
        tokens = ["user-token"]
        gateway = SupabaseGateway(mock_supabase, settings, credentials=lambda: tokens[-1])
        respond(query_builder, [], [])

        await gateway.list("classes")
        tokens.append(None)
        await gateway.list("classes")

        assert [c.args for c in mock_supabase.postgrest.auth.call_args_list] == [("user-token",), ("anon",)]

    @pytest.mark.asyncio
    async def test_get_missing_row(self, gateway, query_builder):
        respond(query_builder, [])
        with pytest.raises(NotFoundError) as exc_info:
            await gateway.get("students", "s9")
        assert exc_info.value.details["record_id"] == "s9"

    @pytest.mark.asyncio
    async def test_fetch_query_detail(self, gateway, query_builder):
        respond(query_builder, [{"id": "s1"}])
        assert await gateway.fetch_query(QueryKey.detail("students", "s1")) == {"id": "s1"}
        query_builder.eq.assert_called_with("id", "s1")

    @pytest.mark.asyncio
    async def test_fetch_query_collection(self, gateway, query_builder):
        respond(query_builder, [{"id": "t1"}])
        rows = await gateway.fetch_query(QueryKey.of("timetable", class_id="c1", day_of_week=2))
        assert rows == [{"id": "t1"}]
        query_builder.eq.assert_any_call("day_of_week", 2)


class TestGatewayWrites:

    @pytest.mark.asyncio
    async def test_create_returns_server_row(self, gateway, query_builder):
        respond(query_builder, [{"id": "s1", "full_name": "Ada"}])
        assert await gateway.create("students", {"id": "s1", "full_name": "Ada"}) == {"id": "s1", "full_name": "Ada"}
        query_builder.insert.assert_called_once_with({"id": "s1", "full_name": "Ada"})

    @pytest.mark.asyncio
    async def test_create_not_readable_back(self, gateway, query_builder):
        respond(query_builder, [])
        with pytest.raises(AuthorizationError):
            await gateway.create("students", {"id": "s1"})

    @pytest.mark.asyncio
    async def test_update_strips_id(self, gateway, query_builder):
        respond(query_builder, [{"id": "s1", "full_name": "Ada"}])
        await gateway.write("students", "update", {"id": "s1", "full_name": "Ada"})
        query_builder.update.assert_called_once_with({"full_name": "Ada"})
        query_builder.eq.assert_called_with("id", "s1")

    @pytest.mark.asyncio
    async def test_delete_missing_row(self, gateway, query_builder):
        respond(query_builder, [])
        with pytest.raises(NotFoundError):
            await gateway.write("students", "delete", {"id": "s1"})

    @pytest.mark.asyncio
    async def test_bulk_upsert_single_call(self, gateway, query_builder):
        records = [{"id": "a1"}, {"id": "a2"}]
        respond(query_builder, records)
        assert await gateway.bulk_upsert("attendance", records) == records
        query_builder.upsert.assert_called_once_with(records)
        assert query_builder.execute.await_count == 1

    @pytest.mark.asyncio
    async def test_unknown_operation(self, gateway):
        with pytest.raises(ValueError):
            await gateway.write("students", "merge", {"id": "s1"})


class TestErrorClassification:

    def test_permission_denied(self):
        error = classify_api_error(api_error("42501", "permission denied for table students"), "students", "update")
        assert isinstance(error, AuthorizationError)
        assert error.details == {"entity": "students", "operation": "update"}

    def test_jwt_expired(self):
        assert isinstance(classify_api_error(api_error("PGRST301"), "students", "list"), AuthorizationError)

    def test_single_row_missing(self):
        assert isinstance(classify_api_error(api_error("PGRST116"), "students", "get"), NotFoundError)

    def test_unique_violation_parses_field_and_constraint(self):
        error = classify_api_error(
            api_error(
                "23505",
                'duplicate key value violates unique constraint "students_email_key"',
                "Key (email)=(ada@school.test) already exists.",
            ),
            "students",
            "create",
        )
        assert isinstance(error, ValidationError)
        assert error.field == "email"
        assert error.constraint == "students_email_key"

    def test_not_null_violation(self):
        error = classify_api_error(
            api_error("23502", 'null value in column "full_name" of relation "students" violates not-null constraint'),
            "students",
            "create",
        )
        assert error.field == "full_name"

    def test_server_error_is_retryable(self):
        error = classify_api_error(api_error("503"), "students", "list")
        assert isinstance(error, NetworkError)
        assert error.retryable

    @pytest.mark.asyncio
    async def test_api_error_raised_from_execute(self, gateway, query_builder):
        query_builder.execute.side_effect = api_error("42501")
        with pytest.raises(AuthorizationError):
            await gateway.list("students")

    @pytest.mark.asyncio
    async def test_transport_error(self, gateway, query_builder):
        query_builder.execute.side_effect = httpx.ConnectError("connection refused")
        with pytest.raises(NetworkError) as exc_info:
            await gateway.get("students", "s1")
        assert exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_http_status_error(self, gateway, query_builder):
        request = httpx.Request("GET", "https://demo.supabase.co/rest/v1/students")
        response = httpx.Response(403, request=request)
        query_builder.execute.side_effect = httpx.HTTPStatusError("forbidden", request=request, response=response)
        with pytest.raises(AuthorizationError):
            await gateway.list("students")
