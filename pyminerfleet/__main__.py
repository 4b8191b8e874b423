# pyMinerFleet Module - Command Line
# -*- coding: utf-8 -*-
"""
 Python module to orchestrate a fleet of Braiins OS mining devices

 Command Line:
    python -m pyminerfleet version
    python -m pyminerfleet status -host 10.0.1.10 -password secret
    python -m pyminerfleet fleet [-tag rack1] [-tenant acme]
    python -m pyminerfleet serve [-port 8680]

 Devices for 'fleet' and 'serve' come from MF_DEVICES or MF_HOST
 (see pyminerfleet/config.py); a .env file in the working directory is loaded.
"""

import argparse
import asyncio
import json
import sys

import dotenv

# Modules
from pyminerfleet import version, set_debug
from pyminerfleet.config import Settings
from pyminerfleet.exceptions import FleetError
from pyminerfleet.manager import FleetManager
from pyminerfleet.models import DeviceRegistration, FleetFilter

dotenv.load_dotenv()

# Setup parser and groups
p = argparse.ArgumentParser(prog="pyminerfleet", description=f"pyMinerFleet Module v{version}")
subparsers = p.add_subparsers(dest="command", title='commands (run <command> -h to see usage information)',
                              required=True)

version_args = subparsers.add_parser("version", help='Print version information')

status_args = subparsers.add_parser("status", help='Read the status of one device')
status_args.add_argument("-host", type=str, required=True, help="IP address or hostname of the device")
status_args.add_argument("-port", type=int, default=80, help="REST API port [Default=80]")
status_args.add_argument("-username", type=str, default="root", help="Login user [Default=root]")
status_args.add_argument("-password", type=str, default="", help="Login password")

fleet_args = subparsers.add_parser("fleet", help='Fleet summary of configured devices')
fleet_args.add_argument("-tag", type=str, action="append", default=[], help="Only devices with this tag")
fleet_args.add_argument("-tenant", type=str, default=None, help="Only devices of this tenant")

serve_args = subparsers.add_parser("serve", help='Run the HTTP server')
serve_args.add_argument("-host", type=str, default=None, help="Bind address [Default=MF_BIND_ADDRESS]")
serve_args.add_argument("-port", type=int, default=None, help="Port [Default=MF_PORT_HTTP]")

# Add a global debug flag
p.add_argument("-debug", action="store_true", default=False, help="Enable debug output")


async def device_status(args) -> dict:
    manager = FleetManager(policy=Settings().retry_policy())
    try:
        await manager.register_device(DeviceRegistration(id="cli", host=args.host, port=args.port,
                                                         username=args.username, password=args.password))
        snapshot = await manager.get_status("cli", force_refresh=True)
        return snapshot.payload.model_dump()
    finally:
        await manager.shutdown()


async def fleet_status(settings: Settings, fleet_filter: FleetFilter) -> dict:
    manager = FleetManager.from_settings(settings)
    try:
        summary = await manager.get_fleet_status(fleet_filter, force_refresh=True)
        return summary.model_dump(mode="json")
    finally:
        await manager.shutdown()


def main(argv=None):
    if argv is None and len(sys.argv) == 1:
        p.print_help(sys.stderr)
        sys.exit(1)
    args = p.parse_args(argv)
    command = args.command

    if args.debug:
        set_debug(True)

    if command == 'version':
        print("pyMinerFleet [%s]" % version)

    elif command == 'status':
        try:
            print(json.dumps(asyncio.run(device_status(args)), indent=4))
        except FleetError as e:
            print(f"ERROR: {e.message}")
            if e.suggestion:
                print(f"       {e.suggestion}")
            sys.exit(1)

    elif command == 'fleet':
        settings = Settings()
        if not settings.devices:
            print("ERROR: No devices configured - set MF_DEVICES or MF_HOST")
            sys.exit(1)
        fleet_filter = FleetFilter(tags=args.tag, tenant_id=args.tenant)
        print(json.dumps(asyncio.run(fleet_status(settings, fleet_filter)), indent=4))

    elif command == 'serve':
        import uvicorn
        settings = Settings()
        uvicorn.run(
            "pyminerfleet.server.main:app",
            host=args.host or settings.server_host,
            port=args.port or settings.server_port,
            log_level="debug" if args.debug or settings.debug else "info",
        )


if __name__ == "__main__":
    main()
