import functools
import logging
from typing import Callable, List, Optional, Type, TypeVar

import requests
from pydantic import BaseModel, ValidationError

from abmate.config import API_BASE_URL
from abmate.errors import APIError, FailurePolicy, NoCoverageAvailable, TransportError
from abmate.models import (
    ActivityDocument,
    ActivityStatus,
    AppleCareCoverage,
    AppleCareCoverageDocument,
    AssignedServerDocument,
    DeviceActivityRequest,
    DeviceDocument,
    DevicesPage,
    MDMServer,
    MDMServersPage,
    OrgDevice,
    RelationshipPage,
)

logger = logging.getLogger("abmate.business_api")

ModelT = TypeVar("ModelT", bound=BaseModel)


def _response_detail(response):
    try:
        payload = response.json()
        errors = payload.get("errors") if isinstance(payload, dict) else None
        if isinstance(errors, list) and errors and isinstance(errors[0], dict):
            first = errors[0]
            return first.get("detail") or first.get("title") or str(payload)
        return str(payload)
    except (ValueError, KeyError, IndexError, TypeError, AttributeError):
        return (response.text or "").strip()[:300]


def _failure_policy(method):
    """Applies BusinessAPIClient.FAILURE_POLICIES[<method name>] to APIError/TransportError."""
    operation = method.__name__

    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        try:
            return method(self, *args, **kwargs)
        except (APIError, TransportError) as e:
            if self.FAILURE_POLICIES.get(operation, FailurePolicy.RAISE) is FailurePolicy.ABSENT:
                logger.info(f"ABM {operation}: treating failure as absent ({e}).")
                return None
            raise

    return wrapper


class BusinessAPIClient:
    """
    Authenticated calls against the Apple Business Manager API.
    Every method takes the bearer token explicitly; see TokenProvider.
    """

    FAILURE_POLICIES = {
        "list_devices": FailurePolicy.RAISE,
        "get_device": FailurePolicy.RAISE,
        "list_mdm_servers": FailurePolicy.RAISE,
        "get_devices_for_mdm": FailurePolicy.RAISE,
        # No assignment is a normal state, so failures read as "unassigned".
        "get_assigned_server": FailurePolicy.ABSENT,
        "get_applecare_coverage": FailurePolicy.RAISE,
        "assign_devices": FailurePolicy.RAISE,
        "check_activity_status": FailurePolicy.RAISE,
    }

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        base_url: str = API_BASE_URL,
        timeout: Optional[float] = None,
    ):
        self.session = session or requests.Session()
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    # --- plumbing ---

    @staticmethod
    def _headers(token: str, accept_json: bool = True) -> dict:
        headers = {"Authorization": f"Bearer {token}"}
        if accept_json:
            headers["Accept"] = "application/json"
        return headers

    def _send(self, method: str, url: str, operation: str, **kwargs):
        try:
            return self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            logger.error(f"❌ ABM {operation} transport error: {e}")
            raise TransportError(f"{operation}: {e}") from e

    def _get(self, url: str, token: str, operation: str):
        return self._send("GET", url, operation, headers=self._headers(token))

    @staticmethod
    def _parse(response, model: Type[ModelT], operation: str) -> ModelT:
        try:
            return model.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            logger.error(f"❌ ABM {operation}: could not decode response: {e}")
            raise APIError(response.status_code, body=response.text, operation=operation) from e

    @staticmethod
    def _fail(response, operation: str) -> APIError:
        logger.error(
            "❌ ABM %s failed: status=%s detail=%s",
            operation,
            response.status_code,
            _response_detail(response),
        )
        return APIError(response.status_code, body=response.text, operation=operation)

    def _get_document(self, path: str, token: str, model: Type[ModelT], operation: str) -> ModelT:
        resp = self._get(f"{self.base_url}{path}", token, operation)
        if resp.status_code != 200:
            raise self._fail(resp, operation)
        return self._parse(resp, model, operation)

    def _collect_pages(self, path: str, token: str, model, operation: str, extract: Optional[Callable] = None) -> list:
        """
        Follows links.next until the server stops returning one.
        Any failed page aborts the whole listing.
        """
        items = []
        next_url = f"{self.base_url}{path}"
        page = 0

        while next_url:
            page += 1
            resp = self._get(next_url, token, operation)
            if resp.status_code != 200:
                raise self._fail(resp, f"{operation} (page {page})")

            parsed = self._parse(resp, model, operation)
            items.extend(extract(parsed) if extract else parsed.data)
            next_url = parsed.links.next if parsed.links else None
            logger.debug(f"ABM {operation}: page {page} -> {len(parsed.data)} items")

        return items

    # --- devices ---

    @_failure_policy
    def list_devices(self, token: str) -> List[OrgDevice]:
        logger.info("🔍 ABM: Fetching organization devices...")
        devices = self._collect_pages("/orgDevices", token, DevicesPage, "list_devices")
        logger.info(f"✅ ABM: Fetched {len(devices)} devices.")
        return devices

    @_failure_policy
    def get_device(self, device_id: str, token: str) -> OrgDevice:
        return self._get_document(f"/orgDevices/{device_id}", token, DeviceDocument, "get_device").data

    @_failure_policy
    def get_assigned_server(self, device_id: str, token: str) -> Optional[str]:
        document = self._get_document(
            f"/orgDevices/{device_id}/relationships/assignedServer",
            token,
            AssignedServerDocument,
            "get_assigned_server",
        )
        return document.data.id if document.data else None

    @_failure_policy
    def get_applecare_coverage(self, device_id: str, token: str) -> AppleCareCoverage:
        operation = "get_applecare_coverage"
        resp = self._get(f"{self.base_url}/orgDevices/{device_id}/appleCareCoverage", token, operation)
        if resp.status_code == 404:
            logger.info(f"ABM: No AppleCare coverage for {device_id}.")
            raise NoCoverageAvailable(device_id)
        if resp.status_code != 200:
            raise self._fail(resp, operation)
        return self._parse(resp, AppleCareCoverageDocument, operation).data

    # --- MDM servers ---

    @_failure_policy
    def list_mdm_servers(self, token: str) -> List[MDMServer]:
        logger.info("🔍 ABM: Fetching MDM servers...")
        servers = self._collect_pages("/mdmServers", token, MDMServersPage, "list_mdm_servers")
        logger.info(f"✅ ABM: Fetched {len(servers)} MDM servers.")
        return servers

    @_failure_policy
    def get_devices_for_mdm(self, mdm_id: str, token: str) -> List[str]:
        return self._collect_pages(
            f"/mdmServers/{mdm_id}/relationships/devices",
            token,
            RelationshipPage,
            "get_devices_for_mdm",
            extract=lambda page: [ref.id for ref in page.data],
        )

    # --- activities ---

    @_failure_policy
    def assign_devices(self, device_ids: List[str], mdm_id: Optional[str], token: str) -> str:
        """
        Submits an ASSIGN_DEVICES activity (or UNASSIGN_DEVICES when mdm_id is None).
        Returns the activity id to poll with check_activity_status.
        """
        operation = "assign_devices"
        document = DeviceActivityRequest.build(list(device_ids), mdm_id)
        activity_type = document["data"]["attributes"]["activityType"]
        logger.info(f"🚀 ABM: Submitting {activity_type} for {len(device_ids)} device(s)...")

        headers = self._headers(token)
        headers["Content-Type"] = "application/json"
        resp = self._send("POST", f"{self.base_url}/orgDeviceActivities", operation,
                          headers=headers, json=document)

        if resp.status_code not in (200, 201):
            raise self._fail(resp, operation)

        activity = self._parse(resp, ActivityDocument, operation).data
        logger.info(f"✅ ABM: Activity {activity.id} created ({activity_type}).")
        return activity.id

    @_failure_policy
    def check_activity_status(self, activity_id: str, token: str) -> ActivityStatus:
        return self._get_document(
            f"/orgDeviceActivities/{activity_id}", token, ActivityDocument, "check_activity_status"
        ).data
