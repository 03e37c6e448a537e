"""CLI parser, subcommand dispatch, and exception handler."""

import argparse
import sys

from tclcloud import __version__
from tclcloud.util import AuthError, TclError


class TclArgumentParser(argparse.ArgumentParser):
    """Custom parser that exits with code 3 on usage errors (not 2)."""

    def error(self, message: str) -> None:
        from tclcloud.format import format_error

        self.print_usage(sys.stderr)
        print(format_error(message), file=sys.stderr)
        sys.exit(3)


def _client(token: str = ""):
    from tclcloud.api import ApiClient
    return ApiClient(token=token)


def _authed_client(args):
    """Return (client, org_id) for the organization the command acts on.

    The caller owns the client and closes it, usually with a ``with`` block.
    """
    from tclcloud.tokens import default_store, resolve_org_id

    store = default_store()
    org_id = resolve_org_id(store, getattr(args, "org_id", "") or "")
    credential = store.get_credential(org_id)
    if credential.is_expired():
        from tclcloud.util import warn
        warn(f"stored token for {org_id} has expired; the API may reject it")
    return _client(credential.access_token), org_id


# Authentication and tokens

def cmd_login(args) -> int:
    """Handler for `tclcloud login`."""
    from tclcloud.auth import authenticate
    from tclcloud.tokens import default_store

    with _client() as client:
        credential = authenticate(
            default_store(), client, force=getattr(args, "force", False),
        )

    from tclcloud.format import format_json, get_output_mode
    mode = get_output_mode(args)
    if mode == "json":
        print(format_json(org_id=credential.org_id, org_name=credential.org_name))
    else:
        print(f"Logged in to organization: {credential.org_name} ({credential.org_id})")
    return 0


def cmd_logout(args) -> int:
    """Handler for `tclcloud logout`."""
    from tclcloud.format import format_json, get_output_mode
    from tclcloud.tokens import default_store

    store = default_store()
    mode = get_output_mode(args)

    if getattr(args, "all", False):
        count = store.remove_all() if store.list_credentials()[0] else 0
        if mode == "json":
            print(format_json(removed=count))
        elif count:
            print(f"Removed {count} token(s). You are now logged out from all organizations.")
        else:
            print("No tokens to remove.")
        return 0

    org_id = getattr(args, "org_id", "") or store.get_default()
    if not org_id:
        tokens, _ = store.list_credentials()
        if not tokens:
            if mode == "json":
                print(format_json(removed=0))
            else:
                print("No tokens to remove.")
            return 0
        raise TclError(
            "multiple tokens stored and no default organization set. "
            "Use --org-id or --all."
        )

    removed = store.remove_credential(org_id)
    if mode == "json":
        print(format_json(removed=1, org_id=org_id))
    elif removed.org_name:
        print(f"Logged out from organization: {removed.org_name} ({org_id})")
    else:
        print(f"Logged out from organization: {org_id}")
    return 0


def cmd_whoami(args) -> int:
    """Handler for `tclcloud whoami`."""
    from tclcloud.api.users import fetch_user_info

    client, _ = _authed_client(args)
    with client:
        info = fetch_user_info(client)

    from tclcloud.format import format_json, get_output_mode
    mode = get_output_mode(args)
    if mode == "json":
        print(format_json(
            user={"id": info.user_id, "email": info.email, "full_name": info.full_name,
                  "email_verified": info.email_verified},
            organizations=[
                {"id": m.org_id, "name": m.name, "slug": m.slug, "role": m.role}
                for m in info.organizations
            ],
        ))
        return 0

    print(f"{info.full_name} <{info.email}>" if info.full_name else info.email)
    if mode == "verbose":
        print(f"ID: {info.user_id}")
        print(f"Email verified: {'yes' if info.email_verified else 'no'}")
        if info.token_org_id:
            print(f"Token organization: {info.token_org_name} ({info.token_org_id})")
    for m in info.organizations:
        line = f"  {m.slug}\t{m.name}\t{m.role}"
        if mode == "verbose" and m.joined_at:
            line += f"\tjoined {m.joined_at}"
        print(line)
    return 0


def _read_token_from_stdin() -> str:
    if sys.stdin.isatty():
        print("Enter your API token: ", end="", file=sys.stderr, flush=True)
    return sys.stdin.readline().strip()


def cmd_token_add(args) -> int:
    """Handler for `tclcloud token add`."""
    token = getattr(args, "token", None) or _read_token_from_stdin()
    if not token:
        raise TclError("token cannot be empty", exit_code=3)

    from tclcloud.api.users import fetch_user_info
    from tclcloud.tokens import default_store

    with _client(token) as client:
        info = fetch_user_info(client)
    org_id, org_name = info.primary_org()
    if not org_id:
        raise TclError("no organizations found for this token")
    default_store().set_credential(org_id, token, "Bearer", org_name)

    from tclcloud.format import format_json, get_output_mode
    if get_output_mode(args) == "json":
        print(format_json(org_id=org_id, org_name=org_name))
    else:
        print(f"Token added for organization: {org_name} ({org_id})")
    return 0


def cmd_token_list(args) -> int:
    """Handler for `tclcloud token list`."""
    from tclcloud.format import format_json, format_table, get_output_mode
    from tclcloud.tokens import default_store

    store = default_store()
    tokens, default_org = store.list_credentials()
    effective_default = store.get_default()

    mode = get_output_mode(args)
    if mode == "json":
        print(format_json(
            default_org=default_org,
            tokens=[
                {"org_id": c.org_id, "org_name": c.org_name,
                 "expires_at": c.expires_at, "expired": c.is_expired()}
                for c in tokens.values()
            ],
        ))
        return 0

    if not tokens:
        print("No tokens stored. Use `tclcloud login` to authenticate.")
        return 0

    rows = [
        [c.org_id, c.org_name, "expired" if c.is_expired() else "active",
         "*" if c.org_id == effective_default else ""]
        for c in tokens.values()
    ]
    print(format_table(rows, ["ORG ID", "ORG NAME", "STATUS", "DEFAULT"]))
    if not effective_default:
        print("\nNo default organization set. "
              "Use `tclcloud token default <org-id>` to set one.")
    return 0


def cmd_token_remove(args) -> int:
    """Handler for `tclcloud token remove`."""
    from tclcloud.tokens import default_store

    removed = default_store().remove_credential(args.org)

    from tclcloud.format import format_success, get_output_mode
    label = f"{removed.org_name} ({args.org})" if removed.org_name else args.org
    print(format_success(f"Removed token for organization: {label}", get_output_mode(args)))
    return 0


def cmd_token_default(args) -> int:
    """Handler for `tclcloud token default`."""
    from tclcloud.format import format_json, format_success, get_output_mode
    from tclcloud.tokens import default_store

    store = default_store()
    mode = get_output_mode(args)
    if args.org:
        store.set_default(args.org)
        print(format_success(f"Default organization set to: {args.org}", mode))
        return 0

    default_org = store.get_default()
    if mode == "json":
        print(format_json(default_org=default_org))
    elif default_org:
        print(default_org)
    else:
        print("No default organization set.")
    return 0


# Local files

def cmd_validate(args) -> int:
    """Handler for `tclcloud validate`."""
    from tclcloud.reconcile import check_library_refs, validate_document

    client, _ = _authed_client(args)
    with client:
        outcome = validate_document(client, args.file)
        ref_checks = check_library_refs(client, outcome.org_id, outcome.document)

    from tclcloud.format import format_json, get_output_mode
    mode = get_output_mode(args)
    if mode == "json":
        print(format_json(
            org_id=outcome.org_id,
            threatmodel=outcome.threatmodel,
            version=outcome.version,
            fingerprint=outcome.document.fingerprint,
            refs=[
                {"kind": c.kind, "published": c.published,
                 "unpublished": [{"ref": r, "status": s} for r, s in c.unpublished],
                 "missing": c.missing,
                 "error": str(c.error) if c.error else None}
                for c in ref_checks
            ],
        ))
        return 0

    print(f"Organization: {outcome.org_id}")
    if not outcome.threatmodel:
        print("Threat model: not declared in backend block")
    else:
        print(f"Threat model: {outcome.threatmodel}")
        if outcome.version:
            print(f"Version: {outcome.version} (local file matches the current version)")
        else:
            print("Version: local file differs from the current version")
    if mode == "verbose":
        print(f"Fingerprint: {outcome.document.fingerprint}")
    _report_ref_checks(ref_checks)
    return 0


def _report_ref_checks(ref_checks) -> None:
    from tclcloud.util import warn

    for check in ref_checks:
        if check.error is not None:
            warn(f"could not validate {check.kind} refs: {check.error}")
            continue
        if check.missing:
            warn(f"unknown {check.kind} refs: {', '.join(check.missing)}")
        if check.unpublished:
            listed = ", ".join(f"{ref} ({status})" for ref, status in check.unpublished)
            warn(f"non-PUBLISHED {check.kind} refs: {listed}")
        if check.published:
            print(f"{len(check.published)} {check.kind} ref(s) validated (PUBLISHED)")


def _print_manual_update(slug: str) -> None:
    print(
        "Cloud threat model created. Update your backend block with:\n"
        f'  threatmodel = "{slug}"\n'
        "Then run `tclcloud push` again to upload."
    )


def cmd_push(args) -> int:
    """Handler for `tclcloud push`."""
    from tclcloud.reconcile import push

    client, _ = _authed_client(args)
    with client:
        result = push(
            client, args.file,
            create=not getattr(args, "no_create", False),
            update_local=not getattr(args, "no_update_local", False),
        )

    from tclcloud.format import format_json, get_output_mode
    mode = get_output_mode(args)
    if mode == "json":
        print(format_json(
            action=result.action,
            org_id=result.org_id,
            threatmodel=result.threatmodel,
            version=result.version,
            rewritten=result.rewritten,
            uploaded=result.uploaded,
            rewrite_error=str(result.rewrite_error) if result.rewrite_error else None,
        ))
        return 0

    if result.action == "unchanged":
        print(f"Cloud version matches local version (v{result.version}), not pushing")
    elif result.action == "uploaded":
        print(f"Pushed {args.file} to threat model '{result.threatmodel}'")
    elif result.action == "skipped":
        print("Cloud threat model not created (--no-create)")
    else:
        print(f"Created threat model '{result.created.name}' (slug: {result.threatmodel})")
        if result.rewrite_error is not None:
            print(f"WARN: could not update {args.file}: {result.rewrite_error}",
                  file=sys.stderr)
            _print_manual_update(result.threatmodel)
        elif not result.rewritten:
            _print_manual_update(result.threatmodel)
        else:
            print(f'Updated {args.file} with threatmodel = "{result.threatmodel}"')
            print(f"Pushed {args.file}")
    return 0


# Threat models

def cmd_create(args) -> int:
    """Handler for `tclcloud create`."""
    from tclcloud.api.threatmodels import create_threat_model, upload_file

    client, org_id = _authed_client(args)
    with client:
        model = create_threat_model(client, org_id, args.name, args.description or "")
        if args.upload:
            upload_file(client, org_id, model.slug, args.upload)

    from tclcloud.format import format_json, get_output_mode
    mode = get_output_mode(args)
    if mode == "json":
        print(format_json(id=model.id, name=model.name, slug=model.slug,
                          uploaded=bool(args.upload)))
    elif mode == "verbose":
        print(f"Created: {model.name}")
        print(f"ID: {model.id}")
        print(f"Slug: {model.slug}")
        if args.upload:
            print(f"Uploaded: {args.upload}")
    else:
        print(model.slug)
    return 0


def cmd_upload(args) -> int:
    """Handler for `tclcloud upload`."""
    from tclcloud.api.threatmodels import upload_file

    client, org_id = _authed_client(args)
    with client:
        upload_file(client, org_id, args.model, args.file)

    from tclcloud.format import format_success, get_output_mode
    print(format_success(f"Uploaded {args.file} to '{args.model}'", get_output_mode(args)))
    return 0


def cmd_models(args) -> int:
    """Handler for `tclcloud models`."""
    from tclcloud.api.threatmodels import list_threat_models

    client, org_id = _authed_client(args)
    with client:
        models = list_threat_models(client, org_id)

    from tclcloud.format import format_json, format_table, get_output_mode
    mode = get_output_mode(args)
    if mode == "json":
        print(format_json(models=[
            {"id": m.id, "name": m.name, "slug": m.slug, "status": m.status,
             "version": m.version}
            for m in models
        ]))
        return 0
    if not models:
        print("No threat models found.")
        return 0

    headers = ["SLUG", "NAME", "STATUS", "VERSION"]
    rows = [[m.slug, m.name, m.status, m.version] for m in models]
    if mode == "verbose":
        headers.append("UPDATED")
        for row, m in zip(rows, models):
            row.append(m.updated_at)
    print(format_table(rows, headers))
    return 0


def cmd_model(args) -> int:
    """Handler for `tclcloud model`."""
    from tclcloud.api.threatmodels import fetch_threat_model

    client, org_id = _authed_client(args)
    with client:
        m = fetch_threat_model(client, org_id, args.slug)

    from tclcloud.format import format_json, get_output_mode
    if get_output_mode(args) == "json":
        print(format_json(
            id=m.id, name=m.name, slug=m.slug, description=m.description,
            status=m.status, version=m.version, created_at=m.created_at,
            updated_at=m.updated_at,
        ))
        return 0

    print(f"Name: {m.name}")
    print(f"Slug: {m.slug}")
    print(f"ID: {m.id}")
    print(f"Status: {m.status}")
    print(f"Version: {m.version}")
    if m.description:
        print(f"Description: {m.description}")
    print(f"Created: {m.created_at}")
    print(f"Updated: {m.updated_at}")
    return 0


def cmd_versions(args) -> int:
    """Handler for `tclcloud versions`."""
    from tclcloud.api.threatmodels import fetch_threat_model, fetch_versions

    client, org_id = _authed_client(args)
    with client:
        model = fetch_threat_model(client, org_id, args.slug)
        versions = fetch_versions(client, org_id, model.id)

    from tclcloud.format import format_json, format_table, get_output_mode
    mode = get_output_mode(args)
    if mode == "json":
        print(format_json(versions=[
            {"id": v.id, "version": v.version, "spec_file_hash": v.fingerprint,
             "is_current": v.is_current, "changed_by": v.author,
             "created_at": v.created_at}
            for v in versions
        ]))
        return 0
    if not versions:
        print("No versions found.")
        return 0

    rows = [
        [v.version, "*" if v.is_current else "", v.author, v.created_at]
        for v in versions
    ]
    headers = ["VERSION", "CURRENT", "CHANGED BY", "CREATED"]
    if mode == "verbose":
        headers.append("HASH")
        for row, v in zip(rows, versions):
            row.append(v.fingerprint)
    print(format_table(rows, headers))
    return 0


def cmd_delete(args) -> int:
    """Handler for `tclcloud delete`."""
    from tclcloud.util import confirm_destructive

    confirm_destructive(f"delete threat model '{args.slug}'",
                        force=getattr(args, "force", False))

    from tclcloud.api.threatmodels import delete_threat_model

    client, org_id = _authed_client(args)
    with client:
        delete_threat_model(client, org_id, args.slug)

    from tclcloud.format import format_success, get_output_mode
    print(format_success(f"Deleted threat model '{args.slug}'", get_output_mode(args)))
    return 0


def cmd_status(args) -> int:
    """Handler for `tclcloud status`."""
    from tclcloud.api.threatmodels import update_status

    client, org_id = _authed_client(args)
    with client:
        update_status(client, org_id, args.slug, args.status)

    from tclcloud.format import format_success, get_output_mode
    print(format_success(
        f"Threat model '{args.slug}' status set to {args.status}",
        get_output_mode(args),
    ))
    return 0


def build_parser() -> TclArgumentParser:
    """Build the CLI argument parser with all subcommands."""
    from tclcloud.api.threatmodels import STATUSES

    parser = TclArgumentParser(
        prog="tclcloud",
        description="CLI for ThreatCL Cloud threat models",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--version", action="version", version=f"tclcloud {__version__}",
    )

    # Global output mode flags via a parent parser so they work
    # both before and after the subcommand name.
    output_parent = argparse.ArgumentParser(add_help=False)
    output_group = output_parent.add_mutually_exclusive_group()
    output_group.add_argument(
        "--json", action="store_true", default=argparse.SUPPRESS, help="JSON output",
    )
    output_group.add_argument(
        "--verbose", action="store_true", default=argparse.SUPPRESS,
        help="Detailed output",
    )

    top_output_group = parser.add_mutually_exclusive_group()
    top_output_group.add_argument("--json", action="store_true", help="JSON output")
    top_output_group.add_argument(
        "--verbose", action="store_true", help="Detailed output"
    )

    org_parent = argparse.ArgumentParser(add_help=False)
    org_parent.add_argument(
        "--org-id", default="",
        help="Organization ID (default: $THREATCL_CLOUD_ORG or the default token)",
    )

    sub = parser.add_subparsers(dest="command")

    # login / logout / whoami
    login_p = sub.add_parser("login", parents=[output_parent], help="Authenticate via device flow")
    login_p.add_argument(
        "--force", action="store_true", help="Log in again even if a valid token exists",
    )
    login_p.set_defaults(func=cmd_login)

    logout_p = sub.add_parser("logout", parents=[output_parent], help="Remove stored tokens")
    logout_scope = logout_p.add_mutually_exclusive_group()
    logout_scope.add_argument("--org-id", default="", help="Organization to log out from")
    logout_scope.add_argument("--all", action="store_true", help="Remove every stored token")
    logout_p.set_defaults(func=cmd_logout)

    whoami_p = sub.add_parser(
        "whoami", parents=[output_parent, org_parent], help="Show the authenticated user",
    )
    whoami_p.set_defaults(func=cmd_whoami)

    # token
    token_p = sub.add_parser("token", help="Manage stored API tokens")
    token_sub = token_p.add_subparsers(dest="token_command")

    token_add_p = token_sub.add_parser("add", parents=[output_parent], help="Store an API token")
    token_add_p.add_argument("--token", help="API token (read from stdin if omitted)")
    token_add_p.set_defaults(func=cmd_token_add)

    token_list_p = token_sub.add_parser("list", parents=[output_parent], help="List stored tokens")
    token_list_p.set_defaults(func=cmd_token_list)

    token_remove_p = token_sub.add_parser(
        "remove", parents=[output_parent], help="Remove the token for an organization",
    )
    token_remove_p.add_argument("org", help="Organization ID")
    token_remove_p.set_defaults(func=cmd_token_remove)

    token_default_p = token_sub.add_parser(
        "default", parents=[output_parent], help="Show or set the default organization",
    )
    token_default_p.add_argument("org", nargs="?", help="Organization ID to make default")
    token_default_p.set_defaults(func=cmd_token_default)

    # local files
    validate_p = sub.add_parser(
        "validate", parents=[output_parent, org_parent],
        help="Check a local file against ThreatCL Cloud",
    )
    validate_p.add_argument("file", help="HCL threat model file")
    validate_p.set_defaults(func=cmd_validate)

    push_p = sub.add_parser(
        "push", parents=[output_parent, org_parent],
        help="Create or update the cloud copy of a local file",
    )
    push_p.add_argument("file", help="HCL threat model file")
    push_p.add_argument(
        "--no-create", action="store_true",
        help="Don't create a threat model when the backend block names none",
    )
    push_p.add_argument(
        "--no-update-local", action="store_true",
        help="Don't write the created slug back into the local file",
    )
    push_p.set_defaults(func=cmd_push)

    # threat models
    create_p = sub.add_parser(
        "create", parents=[output_parent, org_parent], help="Create a threat model",
    )
    create_p.add_argument("--name", required=True, help="Threat model name")
    create_p.add_argument("--description", default="", help="Threat model description")
    create_p.add_argument("--upload", metavar="FILE", help="Upload FILE as the first version")
    create_p.set_defaults(func=cmd_create)

    upload_p = sub.add_parser(
        "upload", parents=[output_parent, org_parent],
        help="Upload a file as a new version",
    )
    upload_p.add_argument("file", help="HCL threat model file")
    upload_p.add_argument("--model", required=True, help="Threat model ID or slug")
    upload_p.set_defaults(func=cmd_upload)

    models_p = sub.add_parser(
        "models", parents=[output_parent, org_parent], help="List threat models",
    )
    models_p.set_defaults(func=cmd_models)

    model_p = sub.add_parser(
        "model", parents=[output_parent, org_parent], help="Show one threat model",
    )
    model_p.add_argument("slug", help="Threat model ID or slug")
    model_p.set_defaults(func=cmd_model)

    versions_p = sub.add_parser(
        "versions", parents=[output_parent, org_parent],
        help="List the versions of a threat model",
    )
    versions_p.add_argument("slug", help="Threat model ID or slug")
    versions_p.set_defaults(func=cmd_versions)

    delete_p = sub.add_parser(
        "delete", parents=[output_parent, org_parent], help="Delete a threat model",
    )
    delete_p.add_argument("slug", help="Threat model ID or slug")
    delete_p.add_argument("--force", action="store_true", help="Skip confirmation")
    delete_p.set_defaults(func=cmd_delete)

    status_p = sub.add_parser(
        "status", parents=[output_parent, org_parent],
        help="Set the status of a threat model",
    )
    status_p.add_argument("slug", help="Threat model ID or slug")
    status_p.add_argument("status", choices=STATUSES, help="New status")
    status_p.set_defaults(func=cmd_status)

    return parser


def main() -> int:
    """Entry point for the tclcloud CLI."""
    from tclcloud.format import format_error

    parser = build_parser()
    args = parser.parse_args()

    if args.command is None:
        parser.print_help(sys.stderr)
        return 3
    if not hasattr(args, "func"):
        print(format_error(f"{args.command}: missing subcommand"), file=sys.stderr)
        return 3

    try:
        return args.func(args)
    except AuthError as e:
        print(format_error(str(e)), file=sys.stderr)
        return 2
    except TclError as e:
        print(format_error(str(e)), file=sys.stderr)
        return e.exit_code
    except Exception as e:
        print(format_error(f"unexpected error: {e}"), file=sys.stderr)
        return 1
