#!/usr/bin/env python3
"""
Webhook Certificate Management - Main Entry Point.

Usage:
    python main.py cert issue [--cn <name>] [--dns <name> ...] [--cert-out f] [--key-out f] [--ca-out f]
    python main.py cert check [--dns <name>]
    python main.py cert show
    python main.py serve [--mode store|files] [--host h] [--port p]
"""

import argparse
import logging
import sys
import threading
from pathlib import Path

from dotenv import load_dotenv
load_dotenv()  # Load .env file before settings are read

from certmgmt.engine import update_bundle, validate
from certmgmt.errors import CertificateError
from certmgmt.store import JsonFileCertificateAccess
from certs.source import LoadedCertificate
from config import settings

logger = logging.getLogger(__name__)


def _store(args) -> JsonFileCertificateAccess:
    return JsonFileCertificateAccess(args.store, key=args.key)


def _policy(args):
    return settings.policy_from_settings(
        common_name=args.cn,
        dns_names=args.dns,
        validity_hours=args.validity_hours,
        renew_before_hours=args.renew_before_hours,
    )


def _write_pem(path: str, data: bytes, private: bool = False) -> None:
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_bytes(data)
    if private:
        target.chmod(0o600)
    print(f"Wrote {target}")


# ============================================================
# Certificate Commands
# ============================================================

def cmd_cert_issue(args):
    """Issue or renew the stored certificate bundle."""
    store = _store(args)
    bundle, changed = update_bundle(store.get(), _policy(args))
    if changed:
        store.set(bundle)
        print(f"Issued new certificate into {store}")
    else:
        print(f"Certificate in {store} is still valid")

    if args.cert_out:
        _write_pem(args.cert_out, bundle.cert)
    if args.key_out:
        _write_pem(args.key_out, bundle.key, private=True)
    if args.ca_out:
        _write_pem(args.ca_out, bundle.ca_cert)


def cmd_cert_check(args):
    """Check whether the stored bundle is valid for the policy."""
    store = _store(args)
    policy = _policy(args)
    if validate(store.get(), policy.primary_dns_name, policy.rest):
        print(f"[OK     ] {store} valid for {policy.primary_dns_name}")
        return
    print(f"[RENEW  ] {store} missing, invalid or expiring within {policy.rest}")
    sys.exit(1)


def cmd_cert_show(args):
    """Print details of the stored server certificate."""
    store = _store(args)
    bundle = store.get()
    if bundle is None or not bundle.cert:
        print(f"No certificate stored in {store}.")
        sys.exit(1)
    loaded = LoadedCertificate.from_pem(bundle.cert, bundle.key)
    for name, value in loaded.summary().items():
        if isinstance(value, list):
            value = ", ".join(value)
        print(f"  {name:15s} {value}")


# ============================================================
# Server Commands
# ============================================================

def _build_source(args, stop_event: threading.Event):
    if args.mode == "files":
        from certs.file import CertWatcher
        return CertWatcher(args.cert_file, args.key_file, stop_event=stop_event)

    from certs.access import AccessSource
    return AccessSource(_store(args), _policy(args), stop_event=stop_event)


def cmd_serve(args):
    """Serve the Flask app over HTTPS with a live-reloading certificate."""
    from certs.source import server_context
    from web import create_app

    stop_event = threading.Event()
    source = _build_source(args, stop_event)
    app = create_app(source)
    logger.info("Serving on https://%s:%d (%s mode)", args.host, args.port, args.mode)
    try:
        app.run(host=args.host, port=args.port, ssl_context=server_context(source))
    finally:
        stop_event.set()


# ============================================================
# Argument Parser
# ============================================================

def _add_policy_arguments(parser):
    parser.add_argument("--cn", help="Server certificate common name")
    parser.add_argument("--dns", nargs="*", help="DNS names (first one is validated)")
    parser.add_argument("--validity-hours", type=float, help="Server certificate lifetime")
    parser.add_argument("--renew-before-hours", type=float, help="Renewal lookahead")


def _add_store_arguments(parser):
    parser.add_argument("--store", default=str(settings.CERT_STORE_PATH), help="JSON certificate store")
    parser.add_argument("--key", default=settings.CERT_STORE_KEY, help="Entry name in the store")


def build_parser():
    parser = argparse.ArgumentParser(
        description="Webhook Certificate Management Tool",
    )
    subparsers = parser.add_subparsers(dest="module")

    # cert
    cert_parser = subparsers.add_parser("cert", help="Certificate bundle management")
    cert_sub = cert_parser.add_subparsers(dest="command")

    issue = cert_sub.add_parser("issue", help="Issue or renew the stored certificate")
    _add_store_arguments(issue)
    _add_policy_arguments(issue)
    issue.add_argument("--cert-out", help="Write the server certificate to this file")
    issue.add_argument("--key-out", help="Write the server key to this file")
    issue.add_argument("--ca-out", help="Write the CA certificate to this file")
    issue.set_defaults(func=cmd_cert_issue)

    check = cert_sub.add_parser("check", help="Check the stored certificate")
    _add_store_arguments(check)
    _add_policy_arguments(check)
    check.set_defaults(func=cmd_cert_check)

    show = cert_sub.add_parser("show", help="Show the stored certificate")
    _add_store_arguments(show)
    show.set_defaults(func=cmd_cert_show)

    # serve
    serve = subparsers.add_parser("serve", help="Run the HTTPS endpoint")
    serve.add_argument("--mode", choices=["store", "files"], default="store")
    serve.add_argument("--host", default=settings.SERVE_HOST)
    serve.add_argument("--port", type=int, default=settings.SERVE_PORT)
    serve.add_argument("--cert-file", default=settings.CERT_FILE)
    serve.add_argument("--key-file", default=settings.KEY_FILE)
    _add_store_arguments(serve)
    _add_policy_arguments(serve)
    serve.set_defaults(func=cmd_serve)

    return parser


def main(argv=None):
    logging.basicConfig(level=settings.LOG_LEVEL, format=settings.LOG_FORMAT)

    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.module:
        parser.print_help()
        sys.exit(1)

    if not hasattr(args, "func"):
        parser.parse_args([args.module, "--help"])
        sys.exit(1)

    try:
        args.func(args)
    except CertificateError as exc:
        logger.error("%s", exc)
        sys.exit(2)


if __name__ == "__main__":
    main()
