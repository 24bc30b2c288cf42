"""Two-phase account deletion.

Phase 1 (confirm) consumes the emailed token, stamps `deletion_scheduled_at`
and schedules phase 2 for that exact moment. Phase 2 (execute) re-reads the
user inside a transaction and deletes it only if the deletion is still
scheduled and due; cancelling means clearing `deletion_scheduled_at`.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

from mortiscope.core.defaults import DELETION_GRACE_PERIOD_DAYS, EARLY_TRIGGER_TOLERANCE
from mortiscope.core.engine.definition import WorkflowDefinition
from mortiscope.core.engine.step import StepContext
from mortiscope.core.logging import get_logger
from mortiscope.core.models.events import (
    AccountDeletionConfirmed,
    AccountDeletionExecute,
    DeletionExecutePayload,
)
from mortiscope.core.services.side_effects import non_critical
from mortiscope.workflows.compensation import (
    deletion_confirmation_failed,
    deletion_execution_failed,
)
from mortiscope.workflows.deps import WorkflowDeps

CONFIRM_DELETION_WORKFLOW_ID = 'confirm-account-deletion'
EXECUTE_DELETION_WORKFLOW_ID = 'execute-account-deletion'

logger = get_logger('account')


class DeletionTokenError(Exception):
    """The confirmation token is unknown or expired. Retrying cannot fix it."""


def build_confirm_deletion_workflow(
    deps: WorkflowDeps,
) -> WorkflowDefinition[AccountDeletionConfirmed]:
    datastore = deps.datastore

    async def validate_token(token: str) -> dict[str, Any]:
        record = await datastore.get_deletion_token(token)
        if record is None:
            raise DeletionTokenError('Token not found')
        if record.expires < deps.clock():
            raise DeletionTokenError('Token has expired')
        return {'token': record.token, 'identifier': record.identifier}

    async def schedule_deletion(email: str) -> dict[str, Any]:
        user = await datastore.get_user_by_email(email)
        if user is None or user.deletion_scheduled_at is not None:
            return {
                'message': 'User not found or deletion already scheduled',
                'user_id': None,
                'deletion_date': None,
            }

        deletion_date = deps.clock() + timedelta(days=DELETION_GRACE_PERIOD_DAYS)
        await datastore.schedule_user_deletion(user.id, deletion_date)
        logger.info(f'Deletion of {user.email} scheduled for {deletion_date.isoformat()}')

        async with non_critical(f'deletion-scheduled email to {user.email}'):
            await deps.mailer.send_account_deletion_scheduled(
                user.email, DELETION_GRACE_PERIOD_DAYS
            )

        return {
            'message': f'Account deletion scheduled for {user.email}',
            'user_id': user.id,
            'deletion_date': deletion_date,
        }

    async def confirm_deletion(
        event: AccountDeletionConfirmed, step: StepContext
    ) -> dict[str, Any]:
        token = await step.run(
            'validate-deletion-token', lambda: validate_token(event.data.token)
        )
        assert isinstance(token, dict)

        # Consumed before any user mutation: a retried run can never reuse it
        await step.run(
            'invalidate-token', lambda: datastore.delete_deletion_token(token['token'])
        )

        scheduled = await step.run(
            'schedule-user-deletion', lambda: schedule_deletion(token['identifier'])
        )
        assert isinstance(scheduled, dict)

        if scheduled['user_id'] and scheduled['deletion_date']:
            # Only the id travels: phase 2 re-reads the current user state
            await step.send_event(
                'schedule-exact-deletion',
                AccountDeletionExecute(
                    data=DeletionExecutePayload(user_id=scheduled['user_id'])
                ),
                ts=datetime.fromisoformat(scheduled['deletion_date']),
            )
        else:
            logger.info(f"Deletion confirmation was a no-op: {scheduled['message']}")

        return {'message': 'Account deletion confirmation processed successfully'}

    return WorkflowDefinition(
        id=CONFIRM_DELETION_WORKFLOW_ID,
        name='Confirm account deletion',
        trigger=AccountDeletionConfirmed,
        handler=confirm_deletion,
        on_failure=deletion_confirmation_failed,
    )


def build_execute_deletion_workflow(
    deps: WorkflowDeps,
) -> WorkflowDefinition[AccountDeletionExecute]:
    datastore = deps.datastore

    def skipped(message: str) -> dict[str, Any]:
        return {'deleted': False, 'message': message, 'email': None, 'name': None}

    async def verify_and_delete(user_id: str) -> dict[str, Any]:
        now = deps.clock()
        async with datastore.transaction() as tx:
            user = await tx.get_user_for_update(user_id)
            if user is None or user.deletion_scheduled_at is None:
                logger.info(f'User {user_id} is gone or cancelled deletion; halting')
                return skipped('User not found or deletion was cancelled.')

            scheduled_at = user.deletion_scheduled_at
            if now < scheduled_at and scheduled_at - now > EARLY_TRIGGER_TOLERANCE:
                logger.warning(
                    f'Deletion of user {user_id} triggered too early '
                    f'(scheduled {scheduled_at.isoformat()}); halting'
                )
                return skipped('Triggered too early.')

            await tx.delete_user(user.id)

        logger.info(f'Deleted account {user.email} (id {user_id})')
        return {
            'deleted': True,
            'message': 'Deletion successful.',
            'email': user.email,
            'name': user.name,
        }

    async def send_goodbye(email: str, name: str | None) -> bool:
        async with non_critical(f'goodbye email to {email}'):
            await deps.mailer.send_goodbye(email, name)
            return True
        return False

    async def execute_deletion(
        event: AccountDeletionExecute, step: StepContext
    ) -> dict[str, Any]:
        user_id = event.data.user_id
        result = await step.run(
            'verify-and-delete-user-atomically', lambda: verify_and_delete(user_id)
        )
        assert isinstance(result, dict)

        if not result['deleted'] or not result['email']:
            return {'message': f"User deletion skipped: {result['message']}"}

        # Outside the transaction: the account is already gone either way
        await step.run(
            'send-goodbye-email', lambda: send_goodbye(result['email'], result['name'])
        )
        return {
            'message': f"Account deletion completed successfully for {result['email']}"
        }

    return WorkflowDefinition(
        id=EXECUTE_DELETION_WORKFLOW_ID,
        name='Execute account deletion',
        trigger=AccountDeletionExecute,
        handler=execute_deletion,
        on_failure=deletion_execution_failed,
    )
