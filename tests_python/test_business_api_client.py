import json
import unittest
from unittest.mock import MagicMock

import requests

from abmate.errors import APIError, FailurePolicy, NoCoverageAvailable, TransportError
from abmate.integrations.business_api import BusinessAPIClient, _response_detail
from abmate.models import DeviceActivityRequest

BASE = "https://api-business.apple.com/v1"


class _FakeResponse:
    def __init__(self, status_code=200, payload=None, text=None):
        self.status_code = status_code
        self._payload = payload
        self.text = text if text is not None else (json.dumps(payload) if payload is not None else "")

    def json(self):
        if self._payload is None:
            raise ValueError("No JSON object could be decoded")
        return self._payload


def _device(device_id, serial=None, **attributes):
    attributes.setdefault("serialNumber", serial or f"SN-{device_id}")
    return {"type": "orgDevices", "id": device_id, "attributes": attributes}


def _page(items, next_url=None):
    return {"data": items, "links": {"self": "ignored", "next": next_url}}


class BusinessAPIClientTestCase(unittest.TestCase):
    def setUp(self):
        self.session = MagicMock()
        self.client = BusinessAPIClient(session=self.session)

    def respond(self, *responses):
        self.session.request.side_effect = list(responses)

    def call(self, index):
        args, kwargs = self.session.request.call_args_list[index]
        return args[0], args[1], kwargs


class PaginationTests(BusinessAPIClientTestCase):
    def test_list_devices_follows_next_links_in_order(self):
        self.respond(
            _FakeResponse(payload=_page([_device("d1"), _device("d2")], f"{BASE}/orgDevices?cursor=2")),
            _FakeResponse(payload=_page([_device("d3")], f"{BASE}/orgDevices?cursor=3")),
            _FakeResponse(payload=_page([_device("d4")], None)),
        )

        devices = self.client.list_devices("tok")

        self.assertEqual([d.id for d in devices], ["d1", "d2", "d3", "d4"])
        self.assertEqual(self.session.request.call_count, 3)
        self.assertEqual(self.call(0)[1], f"{BASE}/orgDevices")
        self.assertEqual(self.call(1)[1], f"{BASE}/orgDevices?cursor=2")
        self.assertEqual(self.call(2)[1], f"{BASE}/orgDevices?cursor=3")

    def test_every_page_carries_bearer_and_accept_headers(self):
        self.respond(
            _FakeResponse(payload=_page([_device("d1")], f"{BASE}/orgDevices?cursor=2")),
            _FakeResponse(payload={"data": [_device("d2")]}),
        )
        self.client.list_devices("tok123")
        for index in range(2):
            method, _, kwargs = self.call(index)
            self.assertEqual(method, "GET")
            self.assertEqual(kwargs["headers"]["Authorization"], "Bearer tok123")
            self.assertEqual(kwargs["headers"]["Accept"], "application/json")

    def test_failed_page_aborts_listing(self):
        self.respond(
            _FakeResponse(payload=_page([_device("d1")], f"{BASE}/orgDevices?cursor=2")),
            _FakeResponse(status_code=500, text="upstream error"),
        )

        with self.assertRaises(APIError) as ctx:
            self.client.list_devices("tok")

        self.assertEqual(ctx.exception.status_code, 500)
        self.assertEqual(ctx.exception.body, "upstream error")
        self.assertEqual(self.session.request.call_count, 2)

    def test_list_mdm_servers_single_page(self):
        self.respond(
            _FakeResponse(
                payload={
                    "data": [
                        {
                            "type": "mdmServers",
                            "id": "srv1",
                            "attributes": {
                                "serverName": "Jamf Pro",
                                "serverType": "MDM",
                                "createdDateTime": "2025-01-01T00:00:00Z",
                                "updatedDateTime": "2025-02-01T00:00:00Z",
                            },
                        }
                    ],
                    "links": {"next": None},
                }
            )
        )
        servers = self.client.list_mdm_servers("tok")
        self.assertEqual(len(servers), 1)
        self.assertEqual(servers[0].name, "Jamf Pro")
        self.assertEqual(servers[0].attributes.serverType, "MDM")
        self.assertEqual(self.call(0)[1], f"{BASE}/mdmServers")

    def test_get_devices_for_mdm_returns_ids(self):
        self.respond(
            _FakeResponse(
                payload={"data": [{"type": "orgDevices", "id": "d1"}, {"type": "orgDevices", "id": "d2"}]}
            )
        )
        self.assertEqual(self.client.get_devices_for_mdm("srv1", "tok"), ["d1", "d2"])
        self.assertEqual(self.call(0)[1], f"{BASE}/mdmServers/srv1/relationships/devices")


class DeviceDetailTests(BusinessAPIClientTestCase):
    def test_get_device_tolerates_unknown_and_missing_attributes(self):
        self.respond(
            _FakeResponse(
                payload={
                    "data": _device(
                        "d1",
                        serial="C02XYZ",
                        deviceModel="MacBook Pro 14-inch",
                        productFamily="Mac",
                        brandNewField={"nested": True},
                    )
                }
            )
        )

        device = self.client.get_device("d1", "tok")

        self.assertEqual(device.serial_number, "C02XYZ")
        self.assertEqual(device.model, "MacBook Pro 14-inch")
        self.assertEqual(device.os, "Mac")
        self.assertIsNone(device.enrollment_state)
        self.assertEqual(self.call(0)[1], f"{BASE}/orgDevices/d1")

    def test_legacy_attribute_names_feed_the_same_accessors(self):
        self.respond(
            _FakeResponse(payload={"data": _device("d1", model="iPad Air", deviceFamily="iPad", osVersion="17.5")})
        )
        device = self.client.get_device("d1", "tok")
        self.assertEqual(device.model, "iPad Air")
        self.assertEqual(device.os, "iPad")
        self.assertEqual(device.os_version, "17.5")

    def test_get_device_non_200(self):
        self.respond(_FakeResponse(status_code=404, payload={"errors": [{"detail": "Not found"}]}))
        with self.assertRaises(APIError) as ctx:
            self.client.get_device("missing", "tok")
        self.assertEqual(ctx.exception.status_code, 404)

    def test_undecodable_success_body(self):
        self.respond(_FakeResponse(status_code=200, text="<html>"))
        with self.assertRaises(APIError) as ctx:
            self.client.get_device("d1", "tok")
        self.assertEqual(ctx.exception.body, "<html>")


class CoverageTests(BusinessAPIClientTestCase):
    def test_404_maps_to_no_coverage(self):
        self.respond(_FakeResponse(status_code=404, text=""))
        with self.assertRaises(NoCoverageAvailable) as ctx:
            self.client.get_applecare_coverage("d1", "tok")
        self.assertNotIsInstance(ctx.exception, APIError)
        self.assertEqual(self.call(0)[1], f"{BASE}/orgDevices/d1/appleCareCoverage")

    def test_500_maps_to_api_error(self):
        self.respond(_FakeResponse(status_code=500, text="boom"))
        with self.assertRaises(APIError) as ctx:
            self.client.get_applecare_coverage("d1", "tok")
        self.assertEqual(ctx.exception.status_code, 500)

    def test_partial_coverage_attributes(self):
        self.respond(
            _FakeResponse(
                payload={
                    "data": {
                        "type": "appleCareCoverage",
                        "id": "d1",
                        "attributes": {"coverageStatus": "ACTIVE", "coverageEndDate": "2027-06-01"},
                    }
                }
            )
        )
        coverage = self.client.get_applecare_coverage("d1", "tok")
        self.assertEqual(coverage.attributes.coverageStatus, "ACTIVE")
        self.assertIsNone(coverage.attributes.appleCarePlanType)


class AssignedServerTests(BusinessAPIClientTestCase):
    def test_returns_server_id(self):
        self.respond(_FakeResponse(payload={"data": {"type": "mdmServers", "id": "srv1"}}))
        self.assertEqual(self.client.get_assigned_server("d1", "tok"), "srv1")
        self.assertEqual(self.call(0)[1], f"{BASE}/orgDevices/d1/relationships/assignedServer")

    def test_null_relationship_is_none(self):
        self.respond(_FakeResponse(payload={"data": None}))
        self.assertIsNone(self.client.get_assigned_server("d1", "tok"))

    def test_error_status_is_none(self):
        self.respond(_FakeResponse(status_code=500, text="boom"))
        self.assertIsNone(self.client.get_assigned_server("d1", "tok"))

    def test_transport_error_is_none(self):
        self.session.request.side_effect = requests.Timeout("timed out")
        self.assertIsNone(self.client.get_assigned_server("d1", "tok"))

    def test_odd_error_bodies_are_none(self):
        for payload in ({"errors": {"detail": "forbidden"}}, {"errors": ["forbidden"]}, {"errors": []}, ["forbidden"]):
            with self.subTest(payload=payload):
                self.respond(_FakeResponse(status_code=403, payload=payload))
                self.assertIsNone(self.client.get_assigned_server("d1", "tok"))


class FailurePolicyTests(BusinessAPIClientTestCase):
    def test_every_operation_has_a_policy(self):
        for operation in (
            "list_devices",
            "get_device",
            "list_mdm_servers",
            "get_devices_for_mdm",
            "get_applecare_coverage",
            "assign_devices",
            "check_activity_status",
        ):
            self.assertIs(BusinessAPIClient.FAILURE_POLICIES[operation], FailurePolicy.RAISE)
        self.assertIs(BusinessAPIClient.FAILURE_POLICIES["get_assigned_server"], FailurePolicy.ABSENT)

    def test_policy_table_drives_behaviour(self):
        self.client.FAILURE_POLICIES = dict(BusinessAPIClient.FAILURE_POLICIES, get_device=FailurePolicy.ABSENT)
        self.respond(_FakeResponse(status_code=500, text="boom"))
        self.assertIsNone(self.client.get_device("d1", "tok"))

        self.client.FAILURE_POLICIES = dict(BusinessAPIClient.FAILURE_POLICIES, get_assigned_server=FailurePolicy.RAISE)
        self.respond(_FakeResponse(status_code=500, text="boom"))
        with self.assertRaises(APIError):
            self.client.get_assigned_server("d1", "tok")

    def test_no_coverage_is_not_swallowed_by_policy(self):
        self.client.FAILURE_POLICIES = dict(
            BusinessAPIClient.FAILURE_POLICIES, get_applecare_coverage=FailurePolicy.ABSENT
        )
        self.respond(_FakeResponse(status_code=404, text=""))
        with self.assertRaises(NoCoverageAvailable):
            self.client.get_applecare_coverage("d1", "tok")


class MalformedErrorBodyTests(BusinessAPIClientTestCase):
    BODIES = ({"errors": {"detail": "x"}}, {"errors": ["x"]}, {"errors": [None]}, {"errors": "x"}, ["x"], "x")

    def test_get_device_raises_api_error(self):
        for payload in self.BODIES:
            with self.subTest(payload=payload):
                self.respond(_FakeResponse(status_code=403, payload=payload))
                with self.assertRaises(APIError) as ctx:
                    self.client.get_device("d1", "tok")
                self.assertEqual(ctx.exception.status_code, 403)

    def test_listing_and_activities_raise_api_error(self):
        self.respond(_FakeResponse(status_code=403, payload={"errors": {"detail": "x"}}))
        with self.assertRaises(APIError):
            self.client.list_devices("tok")

        self.respond(_FakeResponse(status_code=422, payload={"errors": ["x"]}))
        with self.assertRaises(APIError) as ctx:
            self.client.assign_devices(["d1"], "srv1", "tok")
        self.assertEqual(ctx.exception.status_code, 422)

        self.respond(_FakeResponse(status_code=400, payload={"errors": {"0": "x"}}))
        with self.assertRaises(APIError):
            self.client.check_activity_status("act-1", "tok")


class ActivityTests(BusinessAPIClientTestCase):
    def _activity(self, status="IN_PROGRESS", sub_status="SUBMITTED"):
        return {
            "data": {
                "type": "orgDeviceActivities",
                "id": "act-1",
                "attributes": {
                    "status": status,
                    "subStatus": sub_status,
                    "createdDateTime": "2025-06-23T09:00:00Z",
                },
            }
        }

    def test_assign_sends_assign_document(self):
        self.respond(_FakeResponse(status_code=201, payload=self._activity()))

        activity_id = self.client.assign_devices(["d1", "d2"], "srv1", "tok")

        self.assertEqual(activity_id, "act-1")
        method, url, kwargs = self.call(0)
        self.assertEqual(method, "POST")
        self.assertEqual(url, f"{BASE}/orgDeviceActivities")
        self.assertEqual(kwargs["headers"]["Content-Type"], "application/json")
        self.assertEqual(kwargs["headers"]["Authorization"], "Bearer tok")
        body = kwargs["json"]["data"]
        self.assertEqual(body["type"], "orgDeviceActivities")
        self.assertEqual(body["attributes"]["activityType"], "ASSIGN_DEVICES")
        self.assertEqual(body["relationships"]["mdmServer"]["data"], {"type": "mdmServers", "id": "srv1"})
        self.assertEqual(
            body["relationships"]["devices"]["data"],
            [{"type": "orgDevices", "id": "d1"}, {"type": "orgDevices", "id": "d2"}],
        )

    def test_unassign_sends_empty_server_id(self):
        self.respond(_FakeResponse(status_code=200, payload=self._activity()))

        self.client.assign_devices(["d1"], None, "tok")

        body = self.call(0)[2]["json"]["data"]
        self.assertEqual(body["attributes"]["activityType"], "UNASSIGN_DEVICES")
        self.assertEqual(body["relationships"]["mdmServer"]["data"]["id"], "")

    def test_rejected_submission_keeps_body(self):
        self.respond(_FakeResponse(status_code=422, payload={"errors": [{"detail": "Device not found"}]}))
        with self.assertRaises(APIError) as ctx:
            self.client.assign_devices(["d1"], "srv1", "tok")
        self.assertEqual(ctx.exception.status_code, 422)
        self.assertIn("Device not found", ctx.exception.body)

    def test_check_activity_status(self):
        self.respond(_FakeResponse(payload=self._activity("COMPLETED", "COMPLETED_WITH_SUCCESS")))
        status = self.client.check_activity_status("act-1", "tok")
        self.assertEqual(status.status, "COMPLETED")
        self.assertEqual(status.sub_status, "COMPLETED_WITH_SUCCESS")
        self.assertEqual(status.created_at, "2025-06-23T09:00:00Z")
        self.assertEqual(self.call(0)[1], f"{BASE}/orgDeviceActivities/act-1")

    def test_check_activity_status_non_200(self):
        self.respond(_FakeResponse(status_code=404, text=""))
        with self.assertRaises(APIError):
            self.client.check_activity_status("act-x", "tok")

    def test_transport_error_propagates(self):
        self.session.request.side_effect = requests.ConnectionError("reset")
        with self.assertRaises(TransportError):
            self.client.check_activity_status("act-1", "tok")


class HelperTests(unittest.TestCase):
    def test_activity_type_follows_server_id(self):
        self.assertEqual(DeviceActivityRequest.activity_type_for("srv1"), "ASSIGN_DEVICES")
        self.assertEqual(DeviceActivityRequest.activity_type_for(None), "UNASSIGN_DEVICES")

    def test_response_detail_prefers_error_detail(self):
        detail = _response_detail(_FakeResponse(payload={"errors": [{"detail": "scope missing"}]}))
        self.assertEqual(detail, "scope missing")

    def test_response_detail_falls_back_to_text(self):
        self.assertEqual(_response_detail(_FakeResponse(text="  plain failure ")), "plain failure")

    def test_response_detail_odd_error_shapes(self):
        self.assertEqual(_response_detail(_FakeResponse(payload={"errors": {"detail": "x"}})), "{'errors': {'detail': 'x'}}")
        self.assertEqual(_response_detail(_FakeResponse(payload={"errors": ["x"]})), "{'errors': ['x']}")
        self.assertEqual(_response_detail(_FakeResponse(payload={"errors": []})), "{'errors': []}")
        self.assertEqual(_response_detail(_FakeResponse(payload={"errors": [{"title": "Forbidden"}]})), "Forbidden")


if __name__ == "__main__":
    unittest.main()
