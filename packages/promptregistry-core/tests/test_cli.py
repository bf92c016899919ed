from __future__ import annotations

import json
from pathlib import Path

from promptregistry.core.cli import main


def _common(temp_dir: Path, workspace: Path) -> list[str]:
    return [
        "--workspace",
        str(workspace),
        "--state-root",
        str(temp_dir / "state"),
        "--work-root",
        str(temp_dir / "work"),
    ]


def _json_out(capsys):
    return json.loads(capsys.readouterr().out.strip().splitlines()[-1])


def test_bundle_id_command(capsys):
    rc = main(["bundle", "id", "--repo", "owner/repo", "--collection", "my-collection", "--version", "1.0.0"])
    assert rc == 0
    assert capsys.readouterr().out.strip() == "owner-repo-my-collection-v1.0.0"


def test_cli_install_flow(temp_dir, workspace, make_bundle, capsys):
    make_bundle("kit", [("prompt", "review", "r\n"), ("agent", "helper", "h\n")])
    common = _common(temp_dir, workspace)

    rc = main(["source", "add", "--id", "acme", "--kind", "filesystem", "--url", str(temp_dir / "bundles"), *common])
    assert rc == 0
    assert "ADDED: acme (filesystem)" in capsys.readouterr().out

    rc = main(["source", "sync", "--id", "acme", *common, "--json"])
    assert rc == 0
    assert _json_out(capsys) == [{"source_id": "acme", "bundles": ["acme-kit-v1.0.0"], "error": None}]

    rc = main(["bundle", "search", "--text", "kit", *common, "--json"])
    assert rc == 0
    assert [r["id"] for r in _json_out(capsys)] == ["acme-kit-v1.0.0"]

    rc = main(["bundle", "install", "acme-kit-v1.0.0", "--commit-mode", "local-only", *common, "--json"])
    assert rc == 0
    out = _json_out(capsys)
    assert out["installed"]["commit_mode"] == "local-only"
    assert (workspace / ".github" / "agents" / "helper.agent.md").is_file()

    rc = main(["doctor", *common, "--json"])
    assert rc == 0
    report = _json_out(capsys)
    assert report["ok"] is True
    assert sorted(report["exclude"]["entries"]) == [
        ".github/agents/helper.agent.md",
        ".github/prompts/review.prompt.md",
        "prompt-registry.local.lock.json",
    ]

    rc = main(["bundle", "switch-mode", "acme-kit-v1.0.0", "--mode", "commit", *common])
    assert rc == 0
    assert "CHANGED: acme-kit-v1.0.0 mode=commit" in capsys.readouterr().out

    rc = main(["bundle", "list", *common])
    assert rc == 0
    assert "acme-kit-v1.0.0 scope=repository mode=commit" in capsys.readouterr().out

    rc = main(["bundle", "uninstall", "acme-kit-v1.0.0", *common, "--json"])
    assert rc == 0
    out = _json_out(capsys)
    assert out["found"] is True and len(out["removed"]) == 2
    assert (workspace / ".git" / "info" / "exclude").read_text(encoding="utf-8") == "*.log\n"


def test_cli_errors_exit_2(temp_dir, workspace, capsys):
    common = _common(temp_dir, workspace)

    rc = main(["bundle", "install", "nope-v1", *common, "--json"])
    assert rc == 2
    err = _json_out(capsys)
    assert err["error"] == "BundleNotFound"
    assert err["bundle_id"] == "nope-v1"

    rc = main(["source", "add", "--id", "x", "--kind", "ftp", "--url", "/", *common])
    assert rc == 2
    assert "Unsupported source kind" in capsys.readouterr().err


def test_cli_doctor_flags_modified_and_drift(temp_dir, workspace, make_bundle, capsys):
    make_bundle("kit", [("prompt", "review", "r\n")])
    common = _common(temp_dir, workspace)
    main(["source", "add", "--id", "acme", "--kind", "filesystem", "--url", str(temp_dir / "bundles"), *common])
    main(["source", "sync", *common])
    main(["bundle", "install", "acme-kit-v1.0.0", "--commit-mode", "local-only", *common])
    capsys.readouterr()

    (workspace / ".github" / "prompts" / "review.prompt.md").write_text("edited", encoding="utf-8")
    (workspace / ".git" / "info" / "exclude").write_text("*.log\n", encoding="utf-8")

    rc = main(["doctor", *common])
    assert rc == 2
    out = capsys.readouterr().out
    assert out.startswith("FAIL:")
    assert "exclude_missing" in out
    assert "file_modified" in out
