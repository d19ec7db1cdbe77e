import argparse
import json
import logging
import sys
import uuid

from .config import CONFIG, load_config
from .credentials import CredentialStore, resolve_credentials
from .errors import ABMError, APIError, TransportError
from .export import write_devices_csv
from .log import setup_logger
from .session import ABMSession, describe_activity

logger = logging.getLogger("abmate")


def build_parser():
    parser = argparse.ArgumentParser(description="ABMate - Apple Business Manager API client")
    parser.add_argument("--client-id", help="Service account client id (BUSINESSAPI.xxxx)")
    parser.add_argument("--key-id", help="Key id registered for the private key")
    parser.add_argument("--private-key", help="Path to the P-256 private key (.pem)")
    parser.add_argument("--verbose", action="store_true", help="Debug logging")

    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("sign", help="Generate and print a client assertion")
    sub.add_parser("token", help="Check that an access token can be obtained")

    devices = sub.add_parser("devices", help="List organization devices")
    devices.add_argument("--csv", help="Write the device list to this CSV file")

    sub.add_parser("servers", help="List MDM servers")

    for name, help_text in (
        ("device", "Show one device"),
        ("coverage", "Show AppleCare coverage for a device"),
        ("assigned-server", "Show the MDM server a device is assigned to"),
    ):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("device_id")

    mdm_devices = sub.add_parser("mdm-devices", help="List device ids assigned to an MDM server")
    mdm_devices.add_argument("mdm_id")

    assign = sub.add_parser("assign", help="Assign devices to an MDM server")
    assign.add_argument("mdm_id")
    assign.add_argument("device_ids", nargs="+")

    unassign = sub.add_parser("unassign", help="Unassign devices from their MDM server")
    unassign.add_argument("device_ids", nargs="+")

    activity = sub.add_parser("activity", help="Check the status of a device activity")
    activity.add_argument("activity_id")

    return parser


def _dump(payload):
    print(json.dumps(payload, indent=2, default=str))


def run_command(args, session: ABMSession) -> int:
    if args.command == "sign":
        print(session.generate_assertion())
        return 0

    session.generate_assertion()

    if args.command == "token":
        session.access_token()
        logger.info("✅ Access token acquired. (Token not displayed)")
    elif args.command == "devices":
        devices = session.fetch_devices()
        if args.csv:
            write_devices_csv(devices, args.csv)
        else:
            _dump([d.model_dump(exclude_none=True) for d in devices])
    elif args.command == "servers":
        _dump([s.model_dump(exclude_none=True) for s in session.fetch_mdm_servers()])
    elif args.command == "device":
        _dump(session.device_detail(args.device_id).model_dump(exclude_none=True))
    elif args.command == "coverage":
        coverage = session.applecare_coverage(args.device_id)
        if coverage is None:
            print("No AppleCare coverage information available for this device.")
        else:
            _dump(coverage.model_dump(exclude_none=True))
    elif args.command == "assigned-server":
        try:
            session.fetch_mdm_servers()
        except (APIError, TransportError) as e:
            logger.warning(f"⚠️  Could not list MDM servers, showing the raw server id: {e}")
        print(session.assigned_server_name(args.device_id) or "Not assigned")
    elif args.command == "mdm-devices":
        _dump(session.devices_for_mdm(args.mdm_id))
    elif args.command == "assign":
        print(session.assign_devices(args.device_ids, args.mdm_id))
    elif args.command == "unassign":
        print(session.unassign_devices(args.device_ids))
    elif args.command == "activity":
        status = session.check_activity_status(args.activity_id)
        print(f"Activity Status: {describe_activity(status)}")
    return 0


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    setup_logger(uuid.uuid4().hex[:8], log_dir=CONFIG.get("LOG_DIR") or "logs",
                 level=logging.DEBUG if args.verbose else logging.INFO)
    load_config()

    store = CredentialStore()
    try:
        credentials = resolve_credentials(args.client_id, args.key_id, args.private_key, store=store)
    except (ValueError, ABMError) as e:
        logger.error(f"❌ {e}")
        return 1

    session = ABMSession(credentials, store=store)
    try:
        return run_command(args, session)
    except ABMError as e:
        logger.error(f"❌ {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
