"""
Operator CLI for caregate.

Bootstraps a deployment: create the schema, organizations and members
(issuing their API keys), seed the first platform owner, and inspect the
security log. These commands run with direct database access, outside the
capability checks; they are meant for whoever already holds ``DB_URI``.
"""

import argparse
import json
import logging
import sys

from caregate.audit import list_security_events
from caregate.capabilities import ROLES
from caregate.config import DEFAULT_EVENT_LIMIT
from caregate.database import (
    get_member_by_email,
    init_engine,
    init_schema,
    insert_member,
    insert_organization,
    insert_patient,
)
from caregate.errors import AuthzError
from caregate.organizations import ORG_TYPES
from caregate.platform_admin import seed
from caregate.sessions import cleanup_expired_sessions, generate_api_key, hash_api_key


def cmd_init_db(engine, args):
    init_schema(engine)
    print("[db] Schema ready.")


def cmd_create_org(engine, args):
    org = insert_organization(engine, name=args.name, slug=args.slug, type=args.type)
    print(f"[org] Created {org.name} ({org.type})")
    print(f"  id:   {org.id}")
    print(f"  slug: {org.slug}")


def cmd_create_member(engine, args):
    if get_member_by_email(engine, args.email) is not None:
        print(f"[ERROR] A member with email {args.email} already exists.", file=sys.stderr)
        return 1

    api_key = generate_api_key()
    member = insert_member(
        engine,
        email=args.email,
        name=args.name,
        role=args.role,
        org_id=args.org_id,
        api_key_hash=hash_api_key(api_key),
    )
    if args.role == "patient":
        insert_patient(engine, member_id=member.id, org_id=args.org_id)

    print(f"[member] Created {member.name} <{member.email}> role={member.role}")
    print(f"  id:      {member.id}")
    print(f"  api key: {api_key}")
    print("Store the API key now; only its hash is kept.")


def cmd_seed_owner(engine, args):
    member = seed(engine, args.email)
    print(f"[owner] {member.email} is now the first platform owner.")


def cmd_cleanup_sessions(engine, args):
    removed = cleanup_expired_sessions(engine)
    print(f"[cleanup] Removed {removed} expired sessions")


def cmd_events(engine, args):
    events = list_security_events(engine, limit=args.limit, action=args.action)
    if not events:
        print("(no security events)")
        return
    for e in events:
        status = "ok  " if e.success else "FAIL"
        diff = json.dumps(e.diff, sort_keys=True) if e.diff is not None else ""
        print(f"{e.timestamp} {status} {e.action:<32} actor={e.actor_id} target={e.target_id} {diff}")
        if e.reason:
            print(f"    reason: {e.reason}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="caregate", description="caregate operator CLI")
    parser.add_argument("--db-uri", help="database URL (defaults to $DB_URI)")
    parser.add_argument("-v", "--verbose", action="store_true", help="log at INFO level")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("init-db", help="create tables and seed the role table")
    p.set_defaults(func=cmd_init_db)

    p = sub.add_parser("create-org", help="create an organization")
    p.add_argument("--name", required=True)
    p.add_argument("--slug", required=True)
    p.add_argument("--type", choices=ORG_TYPES, default="clinic")
    p.set_defaults(func=cmd_create_org)

    p = sub.add_parser("create-member", help="create a member and print their API key")
    p.add_argument("--email", required=True)
    p.add_argument("--name", required=True)
    p.add_argument("--role", choices=ROLES, required=True)
    p.add_argument("--org-id")
    p.set_defaults(func=cmd_create_member)

    p = sub.add_parser("seed-owner", help="make the first platform owner (only while none exists)")
    p.add_argument("--email", required=True)
    p.set_defaults(func=cmd_seed_owner)

    p = sub.add_parser("cleanup-sessions", help="delete expired sessions")
    p.set_defaults(func=cmd_cleanup_sessions)

    p = sub.add_parser("events", help="show recent security events")
    p.add_argument("--limit", type=int, default=DEFAULT_EVENT_LIMIT)
    p.add_argument("--action")
    p.set_defaults(func=cmd_events)

    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    engine = init_engine(args.db_uri)
    try:
        return args.func(engine, args) or 0
    except AuthzError as e:
        print(f"[ERROR] {e.code}: {e.message}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
