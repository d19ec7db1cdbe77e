import csv
import io
import logging
import os
from typing import Iterable

from abmate.models import OrgDevice

logger = logging.getLogger("abmate.export")

CSV_COLUMNS = ["Serial Number", "Model", "Product Family", "Product Type", "Status", "ID"]


def _row(device: OrgDevice):
    return [
        device.serial_number,
        device.model or "",
        device.os or "",
        device.product_type or "",
        device.enrollment_state or "",
        device.id,
    ]


def devices_to_csv(devices: Iterable[OrgDevice]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(CSV_COLUMNS)
    for device in devices:
        writer.writerow(_row(device))
    return buffer.getvalue()


def write_devices_csv(devices: Iterable[OrgDevice], path: str) -> int:
    devices = list(devices)
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    with open(path, "w", newline="", encoding="utf-8") as handle:
        handle.write(devices_to_csv(devices))
    logger.info(f"📄 Exported {len(devices)} devices to {path}")
    return len(devices)
