"""Credential verification ahead of a billing window."""

from abc import ABC, abstractmethod

from scheduler_platform.adr.api_client import AdrApiClient, AdrApiResult
from scheduler_platform.core.errors import CredentialVerificationFailed
from scheduler_platform.core.logging import get_logger
from scheduler_platform.models.adr_account import AdrAccount
from scheduler_platform.models.adr_job import AdrJob, AdrRequestType

logger = get_logger(__name__)


class BaseCredentialVerifier(ABC):
    """Checks that a vendor credential can log in."""

    @abstractmethod
    async def verify_credentials(
        self,
        credential_id: int,
        job: AdrJob,
        account: AdrAccount,
    ) -> AdrApiResult | None:
        """
        Verify a credential for the job's account.

        Returns:
            The API round-trip to record, or None if nothing was sent

        Raises:
            CredentialVerificationFailed: If the credential cannot log in
        """
        pass


class AdrApiCredentialVerifier(BaseCredentialVerifier):
    """
    Sends an AttemptLogin request through the document retrieval API.

    A non-error response counts as valid. On failure the API side raises
    the helpdesk ticket for the credential.
    """

    def __init__(self, client: AdrApiClient) -> None:
        self.client = client

    async def verify_credentials(
        self,
        credential_id: int,
        job: AdrJob,
        account: AdrAccount,
    ) -> AdrApiResult:
        result = await self.client.send_request(
            AdrRequestType.ATTEMPT_LOGIN,
            credential_id=credential_id,
            job_id=job.id,
            account_id=account.external_account_id,
            interface_account_id=account.interface_account_id,
            start_date=job.billing_period_start,
            end_date=job.billing_period_end,
        )
        if not result.success or result.is_error:
            reason = result.error_message or result.status_description or "login attempt rejected"
            logger.bind(job_id=job.id, credential_id=credential_id, reason=reason).warning(
                "credential_verification_failed"
            )
            raise CredentialVerificationFailed(credential_id, reason, result=result)
        return result
