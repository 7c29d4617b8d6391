from __future__ import annotations

import pytest

from scripts.indexer import main, parse_args

pytestmark = pytest.mark.anyio


@pytest.mark.parametrize(
    ("argv", "expected"),
    [
        ([], (None, None, False)),
        (["/repo"], ("/repo", None, False)),
        (["/repo", "--reindex"], ("/repo", None, True)),
        (["--reindex", "/repo", "backend"], ("/repo", "backend", True)),
        (["/repo", "backend"], ("/repo", "backend", False)),
        (["--reindex"], (None, None, True)),
    ],
)
def test_parse_args_keeps_flags_out_of_positionals(argv, expected) -> None:
    args = parse_args(argv)
    assert (args.directory, args.scope_id, args.reindex) == expected


async def test_reindex_flag_alone_uses_workspace_path(tmp_path, monkeypatch, caplog) -> None:
    missing = tmp_path / "workspace"
    monkeypatch.setenv("WORKSPACE_PATH", str(missing))

    assert await main(["--reindex"]) == 1
    assert f"Directory does not exist: {missing}" in caplog.text
