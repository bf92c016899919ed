import argparse
import json
import sys

from promptregistry.core.bundles import bundle_id as make_bundle_id
from promptregistry.core.diagnostics import doctor_check_workspace
from promptregistry.core.exception import RegistryError
from promptregistry.core.manager import RegistryManager
from promptregistry.core.observability import configure_logging
from promptregistry.core.runtime.settings import load_settings
from promptregistry.core.spec import COMMIT_MODES, SCOPES


def _manager(args) -> RegistryManager:
    overrides = {}
    if args.work_root:
        overrides["work_root"] = args.work_root
    if args.state_root:
        overrides["state_root"] = args.state_root
    if args.workspace:
        overrides["workspace_root"] = args.workspace
    settings = load_settings(overrides)
    configure_logging(settings)
    return RegistryManager(settings)


def _print_json(payload) -> None:
    print(json.dumps(payload, ensure_ascii=False))


def _build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--workspace", default=None, help="Workspace root (defaults to PROMPTREGISTRY_WORKSPACE_ROOT or cwd)")
    common.add_argument("--state-root", default=None, help="Override state root (defaults to PROMPTREGISTRY_STATE_ROOT or settings)")
    common.add_argument("--work-root", default=None, help="Override work root (defaults to PROMPTREGISTRY_WORK_ROOT or settings)")
    common.add_argument("--json", action="store_true", help="Output machine-readable JSON")

    parser = argparse.ArgumentParser(prog="promptregistry", description="promptregistry-core CLI")
    sp = parser.add_subparsers(dest="cmd", required=True)

    sourcep = sp.add_parser("source", help="Source registration and sync")
    ssp = sourcep.add_subparsers(dest="source_cmd", required=True)

    addp = ssp.add_parser("add", parents=[common], help="Register (or replace) a source")
    addp.add_argument("--id", required=True)
    addp.add_argument("--kind", required=True, help="Adapter kind (filesystem, http)")
    addp.add_argument("--url", required=True, help="Directory path or base URL")
    addp.add_argument("--name", default=None)
    addp.add_argument("--credential-ref", default=None, help="Env var holding the access token")
    addp.add_argument("--priority", type=int, default=0)
    addp.add_argument("--disabled", action="store_true")

    rmp = ssp.add_parser("remove", parents=[common], help="De-register a source")
    rmp.add_argument("--id", required=True)

    ssp.add_parser("list", parents=[common], help="List registered sources")

    ssyncp = ssp.add_parser("sync", parents=[common], help="Refresh cached bundle records from sources")
    ssyncp.add_argument("--id", default=None, help="Only this source (default: all enabled sources)")

    bundlep = sp.add_parser("bundle", help="Bundle operations")
    bsp = bundlep.add_subparsers(dest="bundle_cmd", required=True)

    searchp = bsp.add_parser("search", parents=[common], help="Search cached bundles")
    searchp.add_argument("--text", default=None)
    searchp.add_argument("--source", default=None)
    searchp.add_argument("--collection", default=None)

    showp = bsp.add_parser("show", parents=[common], help="Show a cached bundle and its manifest")
    showp.add_argument("bundle_id")

    instp = bsp.add_parser("install", parents=[common], help="Install a bundle")
    instp.add_argument("bundle_id")
    instp.add_argument("--scope", choices=list(SCOPES), default="repository")
    instp.add_argument("--commit-mode", choices=list(COMMIT_MODES), default=None)
    instp.add_argument("--version", default=None)

    unp = bsp.add_parser("uninstall", parents=[common], help="Uninstall a bundle")
    unp.add_argument("bundle_id")
    unp.add_argument("--scope", choices=list(SCOPES), default="repository")

    listp = bsp.add_parser("list", parents=[common], help="List installed bundles")
    listp.add_argument("--scope", choices=list(SCOPES), default=None)

    swp = bsp.add_parser("switch-mode", parents=[common], help="Switch a repository bundle between commit and local-only")
    swp.add_argument("bundle_id")
    swp.add_argument("--mode", choices=list(COMMIT_MODES), required=True)

    statp = bsp.add_parser("status", parents=[common], help="Show install status of a bundle (no remote fetch)")
    statp.add_argument("bundle_id")
    statp.add_argument("--scope", choices=list(SCOPES), default="repository")

    idp = bsp.add_parser("id", parents=[common], help="Print the bundle id for a repository/collection/version")
    idp.add_argument("--repo", required=True, help="Repository slug, e.g. owner/repo")
    idp.add_argument("--collection", required=True)
    idp.add_argument("--version", required=True)

    sp.add_parser("doctor", parents=[common], help="Doctor checks (lockfiles, modified files, git exclude)")
    return parser


def _run_source(args) -> int:
    m = _manager(args)
    if args.source_cmd == "add":
        src = m.add_source(
            {
                "id": args.id,
                "name": args.name,
                "kind": args.kind,
                "url": args.url,
                "credential_ref": args.credential_ref,
                "priority": args.priority,
                "enabled": not args.disabled,
            }
        )
        if args.json:
            _print_json(src.model_dump())
        else:
            print(f"ADDED: {src.id} ({src.kind}) {src.url}")
        return 0

    if args.source_cmd == "remove":
        existed = m.remove_source(args.id)
        if args.json:
            _print_json({"source_id": args.id, "removed": existed})
        else:
            print(f"{'REMOVED' if existed else 'NOT REGISTERED'}: {args.id}")
        return 0

    if args.source_cmd == "list":
        sources = m.list_sources()
        if args.json:
            _print_json([s.model_dump() for s in sources])
        else:
            for s in sources:
                state = "enabled" if s.enabled else "disabled"
                print(f"{s.id} kind={s.kind} priority={s.priority} {state} url={s.url}")
        return 0

    if args.source_cmd == "sync":
        if args.id:
            records = m.sync_source(args.id)
            out = [{"source_id": args.id, "bundles": [r.id for r in records], "error": None}]
        else:
            out = [
                {
                    "source_id": o.item.id,
                    "bundles": [r.id for r in (o.result or [])],
                    "error": None if o.ok else str(o.error),
                }
                for o in m.sync_all_sources()
            ]
        if args.json:
            _print_json(out)
        else:
            for o in out:
                if o["error"]:
                    print(f"FAILED: {o['source_id']}: {o['error']}")
                else:
                    print(f"SYNCED: {o['source_id']} bundles={len(o['bundles'])}")
        return 0 if all(not o["error"] for o in out) else 2

    return 1


def _run_bundle(args) -> int:
    if args.bundle_cmd == "id":
        bid = make_bundle_id(args.repo, args.collection, args.version)
        if args.json:
            _print_json({"bundle_id": bid})
        else:
            print(bid)
        return 0

    m = _manager(args)
    if args.bundle_cmd == "search":
        records = m.search_bundles(text=args.text, source_id=args.source, collection_id=args.collection)
        if args.json:
            _print_json([r.model_dump() for r in records])
        else:
            for r in records:
                print(f"{r.id} source={r.source_id} version={r.version} name={r.name or r.collection_id}")
        return 0

    if args.bundle_cmd == "show":
        rec = m.get_bundle(args.bundle_id)
        manifest = m.get_bundle_manifest(args.bundle_id)
        if args.json:
            _print_json({"bundle": rec.model_dump(), "manifest": manifest.model_dump(by_alias=True)})
        else:
            print(f"{rec.id} source={rec.source_id} version={rec.version}")
            for it in manifest.items:
                print(f"- {it.kind}: {it.id} ({it.file})")
        return 0

    if args.bundle_cmd == "install":
        installed = m.install_bundle(args.bundle_id, scope=args.scope, commit_mode=args.commit_mode, version=args.version)
        if args.json:
            _print_json({"bundle_id": args.bundle_id, "installed": installed.model_dump() if installed else None})
        elif installed is None:
            print(f"SKIPPED: {args.bundle_id} (no usable deployment manifest)")
        else:
            mode = f" mode={installed.commit_mode}" if installed.commit_mode else ""
            print(f"INSTALLED: {installed.bundle_id} scope={installed.scope}{mode} path={installed.install_path}")
        return 0

    if args.bundle_cmd == "uninstall":
        res = m.uninstall_bundle(args.bundle_id, scope=args.scope)
        if args.json:
            _print_json(res.as_dict())
        elif not res.found:
            print(f"NOT INSTALLED: {args.bundle_id}")
        else:
            print(f"UNINSTALLED: {args.bundle_id} removed={len(res.removed)} preserved={len(res.preserved)}")
            for p in res.preserved:
                print(f"! kept modified file {p}")
        return 0

    if args.bundle_cmd == "list":
        items = m.list_installed_bundles(args.scope)
        if args.json:
            _print_json([b.model_dump() for b in items])
        else:
            for b in items:
                mode = f" mode={b.commit_mode}" if b.commit_mode else ""
                print(f"{b.bundle_id} scope={b.scope}{mode} version={b.version} path={b.install_path}")
        return 0

    if args.bundle_cmd == "switch-mode":
        changed = m.switch_commit_mode(args.bundle_id, args.mode)
        if args.json:
            _print_json({"bundle_id": args.bundle_id, "mode": args.mode, "changed": changed})
        else:
            status = "CHANGED" if changed else "UNCHANGED"
            print(f"{status}: {args.bundle_id} mode={args.mode}")
        return 0

    if args.bundle_cmd == "status":
        st = m.bundle_status(args.bundle_id, scope=args.scope)
        if args.json:
            _print_json(st)
        else:
            installed = "yes" if st.get("installed") else "no"
            print(f"bundle_id={args.bundle_id} scope={args.scope} installed={installed} slot={st.get('slot') or '-'}")
            for c in st.get("changes") or []:
                print(f"- {c['status']}: {c['path']}")
        return 0

    return 1


def main(argv=None) -> int:
    argv = sys.argv[1:] if argv is None else argv
    parser = _build_parser()
    args = parser.parse_args(argv)

    try:
        if args.cmd == "source":
            return _run_source(args)
        if args.cmd == "bundle":
            return _run_bundle(args)
        if args.cmd == "doctor":
            m = _manager(args)
            report = doctor_check_workspace(
                m.workspace_root,
                store=m.repository().store,
                ledger=m.repository().ledger,
                managed_dir=m.settings.managed_dir,
            )
            if args.json:
                _print_json(report)
            else:
                print(f"{'OK' if report.get('ok') else 'FAIL'}: {report.get('workspace')}")
                for e in report.get("errors", []):
                    print(f"- {e.get('loc')}: {e.get('code')} - {e.get('msg')}")
                for w in report.get("warnings", []) or []:
                    print(f"! {w.get('loc')}: {w.get('code')} - {w.get('msg')}")
            return 0 if report.get("ok") else 2
    except RegistryError as e:
        if args.json:
            _print_json(e.as_dict())
        else:
            print(f"ERROR: {e}", file=sys.stderr)
        return 2
    except ValueError as e:
        if args.json:
            _print_json({"error": type(e).__name__, "message": str(e)})
        else:
            print(f"ERROR: {e}", file=sys.stderr)
        return 2

    return 1


if __name__ == "__main__":
    raise SystemExit(main())
