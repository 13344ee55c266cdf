"""Unit tests for dead-letter queue retry and resolve."""
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest

from schemas.sync import RetryResult
from services import dead_letter

MODULE = "services.dead_letter"


@asynccontextmanager
async def _fake_savepoint(session):
    yield session


def _item(**overrides):
    values = {
        "id": uuid.uuid4(),
        "entity_type": "user",
        "entity_id": "user_01",
        "resolved_at": None,
        "retryable": True,
        "retry_count": 0,
        "last_retry_workflow_id": None,
        "context": {"webhook_event": "user.updated"},
    }
    values.update(overrides)
    return SimpleNamespace(**values)


@pytest.fixture(autouse=True)
def no_savepoint():
    with patch(f"{MODULE}.savepoint", _fake_savepoint):
        yield


class TestRetryDeadLetterItem:
    @pytest.mark.asyncio
    @patch(f"{MODULE}.dlq_repo.mark_retried", new_callable=AsyncMock)
    @patch(f"{MODULE}.dlq_repo.get_by_id", new_callable=AsyncMock, return_value=None)
    async def test_missing_item(self, mock_get, mock_mark):
        result = await dead_letter.retry_dead_letter_item("session", uuid.uuid4())

        assert result.success is False
        assert result.error == "Item not found"
        mock_mark.assert_not_called()

    @pytest.mark.asyncio
    @patch(f"{MODULE}.dlq_repo.mark_retried", new_callable=AsyncMock)
    @patch(f"{MODULE}.dlq_repo.get_by_id", new_callable=AsyncMock)
    async def test_non_retryable_item_rejected(self, mock_get, mock_mark):
        item = _item(retryable=False)
        mock_get.return_value = item

        result = await dead_letter.retry_dead_letter_item("session", item.id)

        assert result.success is False
        assert result.error == "Item is not retryable"
        assert item.retry_count == 0
        mock_mark.assert_not_called()

    @pytest.mark.asyncio
    @patch(f"{MODULE}.dlq_repo.mark_retried", new_callable=AsyncMock)
    @patch(f"{MODULE}.dlq_repo.get_by_id", new_callable=AsyncMock)
    async def test_resolved_item_rejected(self, mock_get, mock_mark):
        item = _item(resolved_at=datetime.now(timezone.utc))
        mock_get.return_value = item

        result = await dead_letter.retry_dead_letter_item("session", item.id)

        assert result.success is False
        assert result.error == "Item is already resolved"
        mock_mark.assert_not_called()

    @pytest.mark.asyncio
    @patch(f"{MODULE}.get_runner")
    @patch(f"{MODULE}.kickoff_user_sync", new_callable=AsyncMock)
    @patch(f"{MODULE}.dlq_repo.mark_retried", new_callable=AsyncMock)
    @patch(f"{MODULE}.sync_repo.get_by_workflow_id", new_callable=AsyncMock)
    @patch(f"{MODULE}.dlq_repo.get_by_id", new_callable=AsyncMock)
    async def test_retry_in_flight_rejected(
        self, mock_get, mock_previous, mock_mark, mock_kickoff, mock_runner
    ):
        item = _item(last_retry_workflow_id="wf_prev", retry_count=1)
        mock_get.return_value = item
        mock_previous.return_value = SimpleNamespace(status="pending", workflow_id="wf_prev")
        mock_runner.return_value.status.return_value = "running"

        result = await dead_letter.retry_dead_letter_item("session", item.id)

        assert result.success is False
        assert "already in progress" in result.error
        assert item.retry_count == 1
        mock_kickoff.assert_not_called()
        mock_mark.assert_not_called()

    @pytest.mark.asyncio
    @patch(f"{MODULE}.get_runner")
    @patch(f"{MODULE}.kickoff_user_sync", new_callable=AsyncMock)
    @patch(f"{MODULE}.dlq_repo.mark_retried", new_callable=AsyncMock)
    @patch(f"{MODULE}.sync_repo.mark_complete", new_callable=AsyncMock)
    @patch(f"{MODULE}.sync_repo.get_by_workflow_id", new_callable=AsyncMock)
    @patch(f"{MODULE}.dlq_repo.get_by_id", new_callable=AsyncMock)
    async def test_finished_retry_awaiting_commit_rejected(
        self, mock_get, mock_previous, mock_complete, mock_mark, mock_kickoff, mock_runner
    ):
        item = _item(last_retry_workflow_id="wf_first", retry_count=1)
        mock_get.return_value = item
        mock_previous.return_value = SimpleNamespace(
            status="pending", workflow_id="wf_first", started_at=datetime.now(timezone.utc) - timedelta(hours=1)
        )
        mock_runner.return_value.status.return_value = "completed"

        result = await dead_letter.retry_dead_letter_item("session", item.id)

        assert result.success is False
        assert "already in progress" in result.error
        mock_complete.assert_not_called()
        mock_kickoff.assert_not_called()
        mock_mark.assert_not_called()

    @pytest.mark.asyncio
    @patch(f"{MODULE}.get_runner")
    @patch(f"{MODULE}.kickoff_user_sync", new_callable=AsyncMock)
    @patch(f"{MODULE}.dlq_repo.mark_retried", new_callable=AsyncMock)
    @patch(f"{MODULE}.sync_repo.mark_complete", new_callable=AsyncMock)
    @patch(f"{MODULE}.sync_repo.get_by_workflow_id", new_callable=AsyncMock)
    @patch(f"{MODULE}.dlq_repo.get_by_id", new_callable=AsyncMock)
    async def test_recent_retry_from_another_process_rejected(
        self, mock_get, mock_previous, mock_complete, mock_mark, mock_kickoff, mock_runner
    ):
        item = _item(last_retry_workflow_id="wf_server", retry_count=1)
        mock_get.return_value = item
        mock_previous.return_value = SimpleNamespace(
            status="pending", workflow_id="wf_server", started_at=datetime.now(timezone.utc) - timedelta(seconds=5)
        )
        mock_runner.return_value.status.return_value = None

        result = await dead_letter.retry_dead_letter_item("session", item.id)

        assert result.success is False
        assert "already in progress" in result.error
        assert item.retry_count == 1
        mock_complete.assert_not_called()
        mock_kickoff.assert_not_called()

    @pytest.mark.asyncio
    @patch(f"{MODULE}.get_runner")
    @patch(f"{MODULE}.kickoff_user_sync", new_callable=AsyncMock)
    @patch(f"{MODULE}.dlq_repo.mark_retried", new_callable=AsyncMock)
    @patch(f"{MODULE}.sync_repo.mark_complete", new_callable=AsyncMock, return_value=None)
    @patch(f"{MODULE}.sync_repo.get_by_workflow_id", new_callable=AsyncMock)
    @patch(f"{MODULE}.dlq_repo.get_by_id", new_callable=AsyncMock)
    async def test_old_retry_completing_meanwhile_rejected(
        self, mock_get, mock_previous, mock_complete, mock_mark, mock_kickoff, mock_runner
    ):
        item = _item(last_retry_workflow_id="wf_old", retry_count=1)
        mock_get.return_value = item
        mock_previous.return_value = SimpleNamespace(
            status="pending", workflow_id="wf_old", started_at=datetime.now(timezone.utc) - timedelta(hours=1)
        )
        mock_runner.return_value.status.return_value = None

        result = await dead_letter.retry_dead_letter_item("session", item.id)

        assert result.success is False
        assert "completed while the retry was checked" in result.error
        mock_kickoff.assert_not_called()
        mock_mark.assert_not_called()

    @pytest.mark.asyncio
    @patch(f"{MODULE}.get_runner")
    @patch(f"{MODULE}.kickoff_user_sync", new_callable=AsyncMock, return_value="wf_new")
    @patch(f"{MODULE}.user_repo.get_by_external_id", new_callable=AsyncMock)
    @patch(f"{MODULE}.dlq_repo.mark_retried", new_callable=AsyncMock)
    @patch(f"{MODULE}.sync_repo.mark_complete", new_callable=AsyncMock)
    @patch(f"{MODULE}.sync_repo.get_by_workflow_id", new_callable=AsyncMock)
    @patch(f"{MODULE}.dlq_repo.get_by_id", new_callable=AsyncMock)
    async def test_lost_retry_is_failed_and_retried_again(
        self, mock_get, mock_previous, mock_complete, mock_mark, mock_user, mock_kickoff, mock_runner
    ):
        item = _item(last_retry_workflow_id="wf_lost", retry_count=1)
        mock_get.return_value = item
        mock_previous.return_value = SimpleNamespace(
            status="pending", workflow_id="wf_lost", started_at=datetime.now(timezone.utc) - timedelta(hours=1)
        )
        mock_runner.return_value.status.return_value = None
        mock_user.return_value = SimpleNamespace(id=uuid.uuid4(), created_at=None)

        result = await dead_letter.retry_dead_letter_item("session", item.id)

        assert result.success is True
        assert result.new_workflow_id == "wf_new"
        assert mock_complete.await_args.args[1] == "wf_lost"
        assert mock_complete.await_args.kwargs["success"] is False
        assert mock_complete.await_args.kwargs["error"] == dead_letter.LOST_WORKFLOW_ERROR
        mock_mark.assert_awaited_once_with("session", item, "wf_new")

    @pytest.mark.asyncio
    @patch(f"{MODULE}.kickoff_user_sync", new_callable=AsyncMock)
    @patch(f"{MODULE}.kickoff_user_deletion", new_callable=AsyncMock, return_value="wf_del")
    @patch(f"{MODULE}.user_repo.get_by_external_id", new_callable=AsyncMock)
    @patch(f"{MODULE}.dlq_repo.mark_retried", new_callable=AsyncMock)
    @patch(f"{MODULE}.dlq_repo.get_by_id", new_callable=AsyncMock)
    async def test_failed_user_deletion_retried_as_deletion(
        self, mock_get, mock_mark, mock_user, mock_delete, mock_upsert
    ):
        item = _item(context={"webhook_event": "user.deleted"})
        mock_get.return_value = item

        result = await dead_letter.retry_dead_letter_item("session", item.id)

        assert result.success is True
        assert result.new_workflow_id == "wf_del"
        mock_delete.assert_awaited_once_with("session", "user_01")
        mock_upsert.assert_not_called()
        mock_user.assert_not_called()
        mock_mark.assert_awaited_once_with("session", item, "wf_del")

    @pytest.mark.asyncio
    @patch(f"{MODULE}.kickoff_organization_sync", new_callable=AsyncMock)
    @patch(f"{MODULE}.kickoff_organization_deletion", new_callable=AsyncMock, return_value="wf_del")
    @patch(f"{MODULE}.org_repo.get_by_external_id", new_callable=AsyncMock, return_value=None)
    @patch(f"{MODULE}.dlq_repo.mark_retried", new_callable=AsyncMock)
    @patch(f"{MODULE}.dlq_repo.get_by_id", new_callable=AsyncMock)
    async def test_failed_organization_deletion_retried_when_row_gone(
        self, mock_get, mock_mark, mock_org, mock_delete, mock_upsert
    ):
        item = _item(
            entity_type="organization",
            entity_id="org_01",
            context={"webhook_event": "organization.deleted"},
        )
        mock_get.return_value = item

        result = await dead_letter.retry_dead_letter_item("session", item.id)

        assert result.success is True
        mock_delete.assert_awaited_once_with("session", "org_01")
        mock_upsert.assert_not_called()

    @pytest.mark.asyncio
    @patch(f"{MODULE}.kickoff_user_sync", new_callable=AsyncMock, return_value="wf_new")
    @patch(f"{MODULE}.user_repo.get_by_external_id", new_callable=AsyncMock)
    @patch(f"{MODULE}.dlq_repo.mark_retried", new_callable=AsyncMock)
    @patch(f"{MODULE}.sync_repo.get_by_workflow_id", new_callable=AsyncMock)
    @patch(f"{MODULE}.dlq_repo.get_by_id", new_callable=AsyncMock)
    async def test_retry_after_failed_retry_spawns_workflow(
        self, mock_get, mock_previous, mock_mark, mock_user, mock_kickoff
    ):
        item = _item(last_retry_workflow_id="wf_prev", retry_count=1)
        mock_get.return_value = item
        mock_previous.return_value = SimpleNamespace(status="failed")
        user_id = uuid.uuid4()
        mock_user.return_value = SimpleNamespace(id=user_id, created_at=datetime.now(timezone.utc))

        result = await dead_letter.retry_dead_letter_item("session", item.id)

        assert result.success is True
        assert result.new_workflow_id == "wf_new"
        mock_mark.assert_awaited_once_with("session", item, "wf_new")
        args = mock_kickoff.await_args.args
        assert args[1:4] == ("user_01", str(user_id), "user.updated")

    @pytest.mark.asyncio
    @patch(f"{MODULE}.kickoff_organization_sync", new_callable=AsyncMock)
    @patch(f"{MODULE}.org_repo.get_by_external_id", new_callable=AsyncMock, return_value=None)
    @patch(f"{MODULE}.dlq_repo.mark_retried", new_callable=AsyncMock)
    @patch(f"{MODULE}.dlq_repo.get_by_id", new_callable=AsyncMock)
    async def test_missing_entity_rejected(self, mock_get, mock_mark, mock_org, mock_kickoff):
        item = _item(entity_type="organization", entity_id="org_gone")
        mock_get.return_value = item

        result = await dead_letter.retry_dead_letter_item("session", item.id)

        assert result.success is False
        assert result.error == "Organization org_gone not found in primary store"
        mock_kickoff.assert_not_called()
        mock_mark.assert_not_called()

    @pytest.mark.asyncio
    @patch(f"{MODULE}.dlq_repo.mark_retried", new_callable=AsyncMock)
    @patch(f"{MODULE}.dlq_repo.get_by_id", new_callable=AsyncMock)
    async def test_subscription_items_not_supported(self, mock_get, mock_mark):
        item = _item(entity_type="subscription", entity_id="sub_123")
        mock_get.return_value = item

        result = await dead_letter.retry_dead_letter_item("session", item.id)

        assert result.success is False
        assert result.error == "Unsupported entity type: subscription"
        mock_mark.assert_not_called()

    @pytest.mark.asyncio
    @patch(f"{MODULE}.dlq_repo.get_by_id", new_callable=AsyncMock, side_effect=RuntimeError("db down"))
    async def test_unexpected_error_returned_not_raised(self, mock_get):
        result = await dead_letter.retry_dead_letter_item("session", uuid.uuid4())

        assert result.success is False
        assert result.error == "db down"


class TestRetryAll:
    @pytest.mark.asyncio
    @patch(f"{MODULE}.retry_dead_letter_item", new_callable=AsyncMock)
    @patch(f"{MODULE}.dlq_repo.list_retryable", new_callable=AsyncMock)
    async def test_counts_successes_and_failures(self, mock_list, mock_retry):
        mock_list.return_value = [_item(entity_id="user_01"), _item(entity_id="user_02")]
        mock_retry.side_effect = [
            RetryResult(success=True, new_workflow_id="wf_a"),
            RetryResult(success=False, error="User user_02 not found in primary store"),
        ]

        result = await dead_letter.retry_all_dead_letter_items("session")

        assert result.total == 2
        assert result.succeeded == 1
        assert result.failed == 1
        assert result.errors == ["user user_02: User user_02 not found in primary store"]

    @pytest.mark.asyncio
    @patch(f"{MODULE}.kickoff_user_sync", new_callable=AsyncMock)
    @patch(f"{MODULE}.user_repo.get_by_external_id", new_callable=AsyncMock)
    @patch(f"{MODULE}.dlq_repo.mark_retried", new_callable=AsyncMock)
    @patch(f"{MODULE}.dlq_repo.get_by_id", new_callable=AsyncMock)
    @patch(f"{MODULE}.dlq_repo.list_retryable", new_callable=AsyncMock)
    async def test_one_item_raising_does_not_abort_batch(
        self, mock_list, mock_get, mock_mark, mock_user, mock_kickoff
    ):
        items = [_item(entity_id=f"user_0{n}") for n in (1, 2, 3)]
        mock_list.return_value = items
        mock_get.side_effect = items
        mock_user.return_value = SimpleNamespace(id=uuid.uuid4(), created_at=None)
        mock_kickoff.side_effect = ["wf_1", "wf_2", "wf_3"]
        mock_mark.side_effect = [None, RuntimeError("deadlock detected"), None]

        result = await dead_letter.retry_all_dead_letter_items("session")

        assert result.total == 3
        assert result.succeeded == 2
        assert result.failed == 1
        assert result.errors == ["user user_02: deadlock detected"]
        assert mock_mark.await_count == 3

    @pytest.mark.asyncio
    @patch(f"{MODULE}.dlq_repo.list_retryable", new_callable=AsyncMock, return_value=[])
    async def test_empty_queue(self, mock_list):
        result = await dead_letter.retry_all_dead_letter_items("session")

        assert (result.total, result.succeeded, result.failed) == (0, 0, 0)
        assert result.errors == []


class TestResolve:
    @pytest.mark.asyncio
    @patch(f"{MODULE}.dlq_repo.get_by_id", new_callable=AsyncMock, return_value=None)
    async def test_missing_item(self, mock_get):
        result = await dead_letter.resolve_dead_letter_item("session", uuid.uuid4())

        assert result.success is False
        assert result.error == "Item not found"

    @pytest.mark.asyncio
    @patch(f"{MODULE}.dlq_repo.resolve", new_callable=AsyncMock)
    @patch(f"{MODULE}.dlq_repo.get_by_id", new_callable=AsyncMock)
    async def test_resolves_open_item(self, mock_get, mock_resolve):
        item = _item()
        mock_get.return_value = item

        result = await dead_letter.resolve_dead_letter_item("session", item.id)

        assert result.success is True
        mock_resolve.assert_awaited_once_with("session", item)

    @pytest.mark.asyncio
    @patch(f"{MODULE}.dlq_repo.resolve", new_callable=AsyncMock)
    @patch(f"{MODULE}.dlq_repo.get_by_id", new_callable=AsyncMock)
    async def test_resolving_twice_is_a_no_op(self, mock_get, mock_resolve):
        mock_get.return_value = _item(resolved_at=datetime.now(timezone.utc))

        result = await dead_letter.resolve_dead_letter_item("session", uuid.uuid4())

        assert result.success is True
        mock_resolve.assert_not_called()
