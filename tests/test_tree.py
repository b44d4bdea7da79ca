"""Tests for the store tree: paths, listings and atomic mutations."""

from __future__ import annotations

import os
from pathlib import Path

import pytest

from skpass.errors import AlreadyExists, InvalidPath, NotEmpty, NotFound, UnsupportedEntryType
from skpass.models import NodeKind
from skpass.tree import StoreTree, ancestors, normalize_path, parent_of


@pytest.fixture
def tree(store_dir: Path) -> StoreTree:
    return StoreTree(store_dir)


def _put(tree: StoreTree, path: str, data: bytes = b"cipher") -> None:
    tree.create_entry(path, data)


# ---------------------------------------------------------------------------
# Path validation
# ---------------------------------------------------------------------------


class TestNormalizePath:
    """Tests for logical path normalization."""

    def test_plain_path(self) -> None:
        assert normalize_path("email/work") == "email/work"

    def test_backslashes_and_suffix(self) -> None:
        """Windows separators and a trailing .gpg are tolerated."""
        assert normalize_path("email\\work.gpg") == "email/work"

    def test_trailing_slash(self) -> None:
        assert normalize_path("email/") == "email"

    @pytest.mark.parametrize(
        "bad",
        ["/etc/passwd", "../escape", "email/../../x", "a//b", "./a", "email/.git", ""],
    )
    def test_rejects_escapes(self, bad: str) -> None:
        with pytest.raises(InvalidPath):
            normalize_path(bad)

    def test_root_allowed_on_request(self) -> None:
        assert normalize_path("", allow_root=True) == ""
        assert normalize_path("/", allow_root=True) == ""

    def test_nul_byte(self) -> None:
        with pytest.raises(InvalidPath):
            normalize_path("a\x00b")

    def test_name_length_limit(self) -> None:
        """The on-disk name, .gpg included, must fit in 255 bytes."""
        assert normalize_path("a" * 251) == "a" * 251
        with pytest.raises(InvalidPath):
            normalize_path("a" * 252)
        with pytest.raises(InvalidPath):
            normalize_path("ok/" + "\u00e9" * 126)

    def test_parent_and_ancestors(self) -> None:
        assert parent_of("a/b/c") == "a/b"
        assert parent_of("a") == ""
        assert ancestors("a/b/c") == ["a/b", "a"]
        assert ancestors("a") == []


# ---------------------------------------------------------------------------
# Resolve and list
# ---------------------------------------------------------------------------


class TestResolve:
    """Tests for StoreTree.resolve."""

    def test_entry_and_folder(self, tree: StoreTree) -> None:
        _put(tree, "email/work")
        assert tree.resolve("email/work").kind == NodeKind.ENTRY
        assert tree.resolve("email").kind == NodeKind.FOLDER
        assert tree.resolve("").kind == NodeKind.FOLDER

    def test_missing(self, tree: StoreTree) -> None:
        with pytest.raises(NotFound):
            tree.resolve("nope")

    def test_missing_store(self, tmp_path: Path) -> None:
        with pytest.raises(NotFound):
            StoreTree(tmp_path / "absent").resolve("")

    def test_symlink_is_unsupported(self, tree: StoreTree, store_dir: Path) -> None:
        """Symlinks are surfaced, not followed or skipped."""
        _put(tree, "real")
        os.symlink(store_dir / "real.gpg", store_dir / "link.gpg")
        with pytest.raises(UnsupportedEntryType):
            tree.resolve("link")

    def test_symlinked_folder_is_unsupported(self, tree: StoreTree, store_dir: Path, tmp_path: Path) -> None:
        outside = tmp_path / "outside"
        outside.mkdir()
        (outside / "x.gpg").write_bytes(b"c")
        os.symlink(outside, store_dir / "linked")
        with pytest.raises(UnsupportedEntryType):
            tree.resolve("linked/x")

    def test_folder_and_entry_clash(self, tree: StoreTree, store_dir: Path) -> None:
        """A name that is both a folder and an entry breaks the namespace."""
        _put(tree, "dup/inner")
        (store_dir / "dup.gpg").write_bytes(b"c")
        with pytest.raises(UnsupportedEntryType):
            tree.resolve("dup")


class TestList:
    """Tests for folder listings."""

    def test_order_folders_first_case_insensitive(self, tree: StoreTree) -> None:
        for path in ("beta", "Alpha", "zeta/one", "Mail/two", "gamma"):
            _put(tree, path)
        names = [(i.name, i.kind) for i in tree.list("")]
        assert names == [
            ("Mail", NodeKind.FOLDER),
            ("zeta", NodeKind.FOLDER),
            ("Alpha", NodeKind.ENTRY),
            ("beta", NodeKind.ENTRY),
            ("gamma", NodeKind.ENTRY),
        ]

    def test_hidden_and_foreign_files_ignored(self, tree: StoreTree, store_dir: Path) -> None:
        """.gpg-id, .git and non-.gpg files are not entries."""
        (store_dir / ".git").mkdir()
        (store_dir / "notes.txt").write_text("x")
        _put(tree, "site")
        assert [i.name for i in tree.list("")] == ["site"]

    def test_unsupported_children_surfaced(self, tree: StoreTree, store_dir: Path) -> None:
        _put(tree, "site")
        os.symlink(store_dir / "site.gpg", store_dir / "alias.gpg")
        kinds = {i.name: i.kind for i in tree.list("")}
        assert kinds["alias"] == NodeKind.UNSUPPORTED
        assert kinds["site"] == NodeKind.ENTRY

    def test_listing_of_entry_fails(self, tree: StoreTree) -> None:
        _put(tree, "site")
        with pytest.raises(NotFound):
            tree.list("site")

    def test_cache_invalidated_by_mutations(self, tree: StoreTree) -> None:
        _put(tree, "email/work")
        assert [i.name for i in tree.list("email")] == ["work"]
        _put(tree, "email/home")
        assert [i.name for i in tree.list("email")] == ["home", "work"]

    def test_external_change_needs_invalidate(self, tree: StoreTree, store_dir: Path) -> None:
        """Lazily loaded listings are reloaded after invalidate()."""
        _put(tree, "a")
        tree.list("")
        (store_dir / "b.gpg").write_bytes(b"c")
        assert [i.name for i in tree.list("")] == ["a"]
        tree.invalidate()
        assert [i.name for i in tree.list("")] == ["a", "b"]

    def test_entries_flat(self, tree: StoreTree) -> None:
        for path in ("b", "a/x", "a/deep/y"):
            _put(tree, path)
        assert tree.entries() == ["a/deep/y", "a/x", "b"]
        assert tree.entries("a") == ["a/deep/y", "a/x"]

    def test_walk_surfaces_symlinks(self, tree: StoreTree, store_dir: Path, tmp_path: Path) -> None:
        """Symlinked entries and folders are reported, not silently dropped."""
        _put(tree, "site")
        os.symlink(store_dir / "site.gpg", store_dir / "alias.gpg")
        outside = tmp_path / "outside"
        outside.mkdir()
        (outside / "x.gpg").write_bytes(b"c")
        os.symlink(outside, store_dir / "linked")

        kinds = {n.path: n.kind for n in tree.walk()}
        assert kinds == {
            "alias": NodeKind.UNSUPPORTED,
            "linked": NodeKind.UNSUPPORTED,
            "site": NodeKind.ENTRY,
        }
        assert tree.entries() == ["site"]


# ---------------------------------------------------------------------------
# Mutations
# ---------------------------------------------------------------------------


class TestCreateAndReplace:
    """Tests for entry creation and overwrite."""

    def test_create_writes_exact_bytes(self, tree: StoreTree, store_dir: Path) -> None:
        tree.create_entry("email/work", b"\x00\x01cipher")
        assert (store_dir / "email" / "work.gpg").read_bytes() == b"\x00\x01cipher"
        assert tree.read("email/work").ciphertext == b"\x00\x01cipher"

    def test_create_occupied(self, tree: StoreTree) -> None:
        _put(tree, "site")
        with pytest.raises(AlreadyExists):
            tree.create_entry("site", b"other")

    def test_create_over_folder(self, tree: StoreTree) -> None:
        _put(tree, "email/work")
        with pytest.raises(AlreadyExists):
            tree.create_entry("email", b"c")

    def test_create_below_entry(self, tree: StoreTree) -> None:
        """An entry cannot become a folder implicitly."""
        _put(tree, "site")
        with pytest.raises(AlreadyExists):
            tree.create_entry("site/login", b"c")

    def test_no_temp_files_left(self, tree: StoreTree, store_dir: Path) -> None:
        _put(tree, "site")
        tree.replace_entry("site", b"new")
        leftovers = [p.name for p in store_dir.iterdir() if p.name.startswith(".skpass-")]
        assert leftovers == []

    def test_replace(self, tree: StoreTree) -> None:
        _put(tree, "site", b"old")
        tree.replace_entry("site", b"new")
        assert tree.read("site").ciphertext == b"new"

    def test_replace_missing(self, tree: StoreTree) -> None:
        with pytest.raises(NotFound):
            tree.replace_entry("site", b"new")


class TestRename:
    """Tests for rename."""

    def test_rename_entry(self, tree: StoreTree) -> None:
        _put(tree, "email/work", b"W")
        node, dst = tree.rename("email/work", "email/work-old")
        assert node.kind == NodeKind.ENTRY
        assert dst == "email/work-old"
        assert [(i.name, i.kind) for i in tree.list("email")] == [("work-old", NodeKind.ENTRY)]
        with pytest.raises(NotFound):
            tree.read("email/work")

    def test_rename_folder_moves_subtree(self, tree: StoreTree) -> None:
        _put(tree, "email/work")
        _put(tree, "email/deep/home")
        tree.rename("email", "mail")
        assert tree.entries() == ["mail/deep/home", "mail/work"]

    def test_rename_prunes_empty_parent(self, tree: StoreTree, store_dir: Path) -> None:
        _put(tree, "old/only")
        tree.rename("old/only", "new/only")
        assert not (store_dir / "old").exists()

    def test_rename_to_existing(self, tree: StoreTree) -> None:
        _put(tree, "a")
        _put(tree, "b")
        with pytest.raises(AlreadyExists):
            tree.rename("a", "b")

    def test_rename_missing(self, tree: StoreTree) -> None:
        with pytest.raises(NotFound):
            tree.rename("a", "b")

    def test_rename_into_itself(self, tree: StoreTree) -> None:
        _put(tree, "a/x")
        with pytest.raises(InvalidPath):
            tree.rename("a", "a/b")


class TestDelete:
    """Tests for delete."""

    def test_delete_entry(self, tree: StoreTree, store_dir: Path) -> None:
        _put(tree, "email/work")
        node, removed = tree.delete("email/work")
        assert removed == ["email/work"]
        assert not (store_dir / "email").exists()

    def test_non_empty_folder_needs_recursive(self, tree: StoreTree) -> None:
        _put(tree, "email/work")
        with pytest.raises(NotEmpty):
            tree.delete("email")
        assert tree.entries("email") == ["email/work"]

    def test_folder_with_only_gpg_id_is_not_empty(self, tree: StoreTree, store_dir: Path) -> None:
        (store_dir / "team").mkdir()
        (store_dir / "team" / ".gpg-id").write_text("R2\n")
        with pytest.raises(NotEmpty):
            tree.delete("team")

    def test_recursive(self, tree: StoreTree, store_dir: Path) -> None:
        _put(tree, "email/work")
        _put(tree, "email/home")
        node, removed = tree.delete("email", recursive=True)
        assert node.kind == NodeKind.FOLDER
        assert removed == ["email/home", "email/work"]
        assert not (store_dir / "email").exists()

    def test_empty_folder(self, tree: StoreTree, store_dir: Path) -> None:
        (store_dir / "empty").mkdir()
        tree.delete("empty")
        assert not (store_dir / "empty").exists()

    def test_root_refused(self, tree: StoreTree) -> None:
        with pytest.raises(InvalidPath):
            tree.delete("", recursive=True)
