from datetime import datetime, timezone
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class _APIModel(BaseModel):
    # The API adds attributes between versions; unknown keys are dropped.
    model_config = ConfigDict(extra="ignore")


# --- Credentials & tokens ---

class ServiceCredentials(BaseModel):
    model_config = ConfigDict(frozen=True)

    client_id: str
    key_id: str
    private_key_pem: str = Field(repr=False)


class AccessToken(BaseModel):
    value: str = Field(repr=False)
    expires_at: datetime

    def is_valid(self, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return now < self.expires_at


class TokenResponse(_APIModel):
    access_token: str
    token_type: Optional[str] = None
    expires_in: int
    scope: Optional[str] = None


class AuthErrorResponse(_APIModel):
    error: str
    error_description: Optional[str] = None


# --- Shared envelope pieces ---

class Links(_APIModel):
    self_: Optional[str] = Field(default=None, alias="self")
    next: Optional[str] = None
    prev: Optional[str] = None


class ResourceIdentifier(_APIModel):
    type: str
    id: str


# --- Devices ---

class DeviceAttributes(_APIModel):
    # Superset of the attribute shapes the API has returned over time.
    serialNumber: Optional[str] = None
    name: Optional[str] = None
    model: Optional[str] = None
    deviceModel: Optional[str] = None
    deviceFamily: Optional[str] = None
    productFamily: Optional[str] = None
    productType: Optional[str] = None
    osVersion: Optional[str] = None
    deviceCapacity: Optional[str] = None
    color: Optional[str] = None
    status: Optional[str] = None
    orderNumber: Optional[str] = None
    orderDateTime: Optional[str] = None
    partNumber: Optional[str] = None
    purchaseSourceType: Optional[str] = None
    purchaseSourceId: Optional[str] = None
    addedToOrgDateTime: Optional[str] = None
    updatedDateTime: Optional[str] = None
    releasedFromOrgDateTime: Optional[str] = None
    imei: Optional[List[str]] = None
    meid: Optional[List[str]] = None
    eid: Optional[str] = None
    wifiMacAddress: Optional[str] = None
    bluetoothMacAddress: Optional[str] = None


class OrgDevice(_APIModel):
    id: str
    type: str = "orgDevices"
    attributes: DeviceAttributes = Field(default_factory=DeviceAttributes)

    # --- HELPER PROPERTIES ---

    @property
    def serial_number(self) -> str:
        return self.attributes.serialNumber or ""

    @property
    def display_name(self) -> Optional[str]:
        return self.attributes.name

    @property
    def model(self) -> Optional[str]:
        """Newer API versions report deviceModel, older ones model."""
        return self.attributes.deviceModel or self.attributes.model

    @property
    def os(self) -> Optional[str]:
        return self.attributes.productFamily or self.attributes.deviceFamily

    @property
    def os_version(self) -> Optional[str]:
        return self.attributes.osVersion

    @property
    def enrollment_state(self) -> Optional[str]:
        return self.attributes.status

    @property
    def product_type(self) -> Optional[str]:
        return self.attributes.productType


class DevicesPage(_APIModel):
    data: List[OrgDevice] = Field(default_factory=list)
    links: Optional[Links] = None


class DeviceDocument(_APIModel):
    data: OrgDevice


# --- MDM servers ---

class MDMServerAttributes(_APIModel):
    serverName: Optional[str] = None
    serverType: Optional[str] = None
    createdDateTime: Optional[str] = None
    updatedDateTime: Optional[str] = None


class MDMServer(_APIModel):
    id: str
    type: str = "mdmServers"
    attributes: MDMServerAttributes = Field(default_factory=MDMServerAttributes)

    @property
    def name(self) -> str:
        return self.attributes.serverName or self.id


class MDMServersPage(_APIModel):
    data: List[MDMServer] = Field(default_factory=list)
    links: Optional[Links] = None


class RelationshipPage(_APIModel):
    data: List[ResourceIdentifier] = Field(default_factory=list)
    links: Optional[Links] = None


class AssignedServerDocument(_APIModel):
    data: Optional[ResourceIdentifier] = None


# --- AppleCare ---

class AppleCareAttributes(_APIModel):
    # Any of these may be missing from the response.
    serialNumber: Optional[str] = None
    coverageStatus: Optional[str] = None
    coverageEndDate: Optional[str] = None
    purchaseDate: Optional[str] = None
    registrationDate: Optional[str] = None
    warrantyStatus: Optional[str] = None
    repairCoverage: Optional[str] = None
    technicalSupportCoverage: Optional[str] = None
    appleCarePlanType: Optional[str] = None
    deviceId: Optional[str] = None
    hardwareType: Optional[str] = None
    estimatedPurchaseDate: Optional[str] = None
    coverageType: Optional[str] = None


class AppleCareCoverage(_APIModel):
    id: Optional[str] = None
    type: Optional[str] = None
    attributes: AppleCareAttributes = Field(default_factory=AppleCareAttributes)


class AppleCareCoverageDocument(_APIModel):
    data: AppleCareCoverage


# --- Activities ---

ASSIGN_DEVICES = "ASSIGN_DEVICES"
UNASSIGN_DEVICES = "UNASSIGN_DEVICES"


class ActivityAttributes(_APIModel):
    status: Optional[str] = None
    subStatus: Optional[str] = None
    createdDateTime: Optional[str] = None
    completedDateTime: Optional[str] = None
    downloadUrl: Optional[str] = None


class ActivityStatus(_APIModel):
    id: str
    type: str = "orgDeviceActivities"
    attributes: ActivityAttributes = Field(default_factory=ActivityAttributes)

    @property
    def status(self) -> Optional[str]:
        return self.attributes.status

    @property
    def sub_status(self) -> Optional[str]:
        return self.attributes.subStatus

    @property
    def created_at(self) -> Optional[str]:
        return self.attributes.createdDateTime


class ActivityDocument(_APIModel):
    data: ActivityStatus


class DeviceActivityRequest:
    """
    Builds the JSON:API document POSTed to /orgDeviceActivities.
    A missing mdm_id means UNASSIGN; the relationship is still sent with an empty id.
    """

    @staticmethod
    def activity_type_for(mdm_id: Optional[str]) -> str:
        return ASSIGN_DEVICES if mdm_id is not None else UNASSIGN_DEVICES

    @classmethod
    def build(cls, device_ids: List[str], mdm_id: Optional[str]) -> dict:
        return {
            "data": {
                "type": "orgDeviceActivities",
                "attributes": {
                    "activityType": cls.activity_type_for(mdm_id),
                },
                "relationships": {
                    "mdmServer": {
                        "data": {"type": "mdmServers", "id": mdm_id if mdm_id is not None else ""}
                    },
                    "devices": {
                        "data": [{"type": "orgDevices", "id": device_id} for device_id in device_ids]
                    },
                },
            }
        }
