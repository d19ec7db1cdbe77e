import logging
from datetime import datetime, timezone
from typing import List, Optional

from abmate.config import API_BASE_URL, CONFIG, TOKEN_URL
from abmate.core.assertion import AssertionSigner, assertion_expires_at
from abmate.core.token_provider import TokenProvider
from abmate.credentials import CredentialStore
from abmate.errors import AssertionMissing, NoCoverageAvailable
from abmate.integrations.business_api import BusinessAPIClient
from abmate.models import ActivityStatus, AppleCareCoverage, MDMServer, OrgDevice, ServiceCredentials

logger = logging.getLogger("abmate.session")


def describe_activity(status: ActivityStatus) -> str:
    text = status.status or "UNKNOWN"
    if status.sub_status:
        text += f" ({status.sub_status})"
    return text


class ABMSession:
    """
    One connection to Apple Business Manager: a held client assertion,
    a token cache and the resource client, plus the last fetched lists.
    """

    def __init__(
        self,
        credentials: ServiceCredentials,
        token_provider: Optional[TokenProvider] = None,
        client: Optional[BusinessAPIClient] = None,
        signer: Optional[AssertionSigner] = None,
        store: Optional[CredentialStore] = None,
    ):
        timeout = CONFIG.get("ABM_HTTP_TIMEOUT")
        self.credentials = credentials
        self.signer = signer or AssertionSigner()
        self.token_provider = token_provider or TokenProvider(
            token_url=CONFIG.get("ABM_TOKEN_URL") or TOKEN_URL, timeout=timeout
        )
        self.client = client or BusinessAPIClient(
            base_url=CONFIG.get("ABM_API_BASE_URL") or API_BASE_URL, timeout=timeout
        )
        self.store = store
        self.client_assertion: Optional[str] = None
        self.devices: List[OrgDevice] = []
        self.mdm_servers: List[MDMServer] = []
        self.last_activity_id: Optional[str] = None

    # --- auth ---

    def generate_assertion(self, now=None) -> str:
        self.client_assertion = self.signer.sign(self.credentials, now)
        if self.store is not None:
            self.store.save(self.credentials.client_id, self.credentials.key_id)
        return self.client_assertion

    def access_token(self) -> str:
        if not self.client_assertion:
            raise AssertionMissing()
        expires_at = assertion_expires_at(self.client_assertion)
        if expires_at and expires_at <= datetime.now(timezone.utc):
            logger.warning("⚠️  Client assertion has expired; generate a new one if authentication fails.")
        return self.token_provider.get_access_token(self.client_assertion, self.credentials.client_id)

    # --- lists ---

    def connect(self):
        """Token, then devices, then servers; each step waits on the previous one."""
        self.devices = []
        self.mdm_servers = []
        token = self.access_token()
        self.devices = self.client.list_devices(token)
        self.mdm_servers = self.client.list_mdm_servers(token)
        logger.info(
            f"✅ Connected to ABM. Fetched {len(self.devices)} devices and {len(self.mdm_servers)} servers."
        )
        return self.devices, self.mdm_servers

    def fetch_devices(self) -> List[OrgDevice]:
        self.devices = self.client.list_devices(self.access_token())
        return self.devices

    def fetch_mdm_servers(self) -> List[MDMServer]:
        self.mdm_servers = self.client.list_mdm_servers(self.access_token())
        return self.mdm_servers

    # --- detail ---

    def device_detail(self, device_id: str) -> OrgDevice:
        return self.client.get_device(device_id, self.access_token())

    def assigned_server_id(self, device_id: str) -> Optional[str]:
        return self.client.get_assigned_server(device_id, self.access_token())

    def assigned_server_name(self, device_id: str) -> Optional[str]:
        server_id = self.assigned_server_id(device_id)
        if server_id is None:
            return None
        for server in self.mdm_servers:
            if server.id == server_id:
                return server.name
        return server_id

    def applecare_coverage(self, device_id: str) -> Optional[AppleCareCoverage]:
        try:
            return self.client.get_applecare_coverage(device_id, self.access_token())
        except NoCoverageAvailable:
            return None

    def devices_for_mdm(self, mdm_id: str) -> List[str]:
        return self.client.get_devices_for_mdm(mdm_id, self.access_token())

    # --- activities ---

    def assign_devices(self, device_ids: List[str], mdm_id: Optional[str]) -> str:
        activity_id = self.client.assign_devices(device_ids, mdm_id, self.access_token())
        self.last_activity_id = activity_id
        action = "assigned" if mdm_id is not None else "unassigned"
        count = len(device_ids)
        logger.info(f"✅ Successfully {action} {count} device{'' if count == 1 else 's'}. Activity ID: {activity_id}")
        return activity_id

    def unassign_devices(self, device_ids: List[str]) -> str:
        return self.assign_devices(device_ids, None)

    def check_activity_status(self, activity_id: Optional[str] = None) -> ActivityStatus:
        activity_id = activity_id or self.last_activity_id
        if not activity_id:
            raise ValueError("No activity id given and no activity submitted in this session.")
        status = self.client.check_activity_status(activity_id, self.access_token())
        logger.info(f"Activity {activity_id}: {describe_activity(status)}")
        return status
