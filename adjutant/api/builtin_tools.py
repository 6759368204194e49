"""Built-in workspace tools: files, directories, search and terminal.

Read-only tools run concurrently within a model turn. Everything else
is write-classified and runs serially behind the approval gate. Paths
arrive already resolved and checked in ``ctx.paths``.
"""

from __future__ import annotations

import asyncio
import fnmatch
import logging
import os
import re
import shutil
from pathlib import Path

from pydantic import BaseModel, Field

from adjutant.api.edits import apply_blocks, line_changes, parse_blocks
from adjutant.api.models import ApprovalType, ToolOutcome
from adjutant.api.paths import display_path
from adjutant.api.tools import ToolContext, ToolDefinition, ToolRegistry

logger = logging.getLogger(__name__)

# Limits
_MAX_COMMAND_TIMEOUT = 300  # seconds
_MAX_OUTPUT_CHARS = 100 * 1024  # 100KB
_MAX_FILE_SIZE = 1 * 1024 * 1024  # 1MB
_MAX_SEARCH_HITS = 50
_MAX_LIST_ENTRIES = 500
_MAX_TREE_ENTRIES = 1000

IGNORED_DIRS = frozenset({
    ".git",
    ".hg",
    ".svn",
    "node_modules",
    "__pycache__",
    ".venv",
    "venv",
    "dist",
    "build",
    "out",
    ".next",
    ".cache",
    ".idea",
    ".vscode",
    ".mypy_cache",
    ".pytest_cache",
})


def _ok(text: str, **meta) -> ToolOutcome:
    return ToolOutcome(success=True, result=text, meta=meta or None)


def _fail(error: str) -> ToolOutcome:
    return ToolOutcome(success=False, error=error)


def _read_text(path: Path) -> str:
    return path.read_text(encoding="utf-8", errors="replace")


def _write_text(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")


# ---------------------------------------------------------------------------
# Parameter models
# ---------------------------------------------------------------------------


class ReadFileParams(BaseModel):
    path: str = Field(description="File path relative to the workspace")
    start_line: int | None = Field(None, ge=1, description="First line to return (1-based)")
    end_line: int | None = Field(None, ge=1, description="Last line to return (inclusive)")


class ReadMultipleFilesParams(BaseModel):
    paths: list[str] = Field(min_length=1, max_length=20, description="File paths to read")


class ListDirectoryParams(BaseModel):
    path: str = Field(".", description="Directory to list")


class DirTreeParams(BaseModel):
    path: str = Field(".", description="Root directory of the tree")
    max_depth: int = Field(3, ge=1, le=10, description="Maximum depth (default 3)")


class SearchFilesParams(BaseModel):
    pattern: str = Field(min_length=1, description="Text or regular expression to find")
    path: str = Field(".", description="Directory to search")
    is_regex: bool = Field(False, description="Treat pattern as a regular expression")
    file_pattern: str | None = Field(None, description='Filename glob, e.g. "*.ts"')


class EditFileParams(BaseModel):
    path: str = Field(description="File to edit")
    search_replace_blocks: str = Field(
        description="One or more blocks: <<<<<<< SEARCH\\nold\\n=======\\nnew\\n>>>>>>> REPLACE"
    )


class WriteFileParams(BaseModel):
    path: str = Field(description="File to write")
    content: str = Field(description="Complete new file content")


class CreateParams(BaseModel):
    path: str = Field(description="Path to create; end with / for a folder")
    content: str = Field("", description="Initial content for files")


class DeleteParams(BaseModel):
    path: str = Field(description="File or folder to delete")
    recursive: bool = Field(False, description="Delete non-empty folders")


class RunCommandParams(BaseModel):
    command: str = Field(min_length=1, description="Shell command")
    cwd: str | None = Field(None, description="Working directory inside the workspace")
    timeout: int = Field(30, ge=1, description="Timeout in seconds (default 30, max 300)")


# ---------------------------------------------------------------------------
# Read-only handlers
# ---------------------------------------------------------------------------


def _number_lines(content: str, start: int | None, end: int | None) -> str:
    lines = content.split("\n")
    first = max(1, start or 1)
    last = min(len(lines), end or len(lines))
    return "\n".join(f"{n}: {lines[n - 1]}" for n in range(first, last + 1))


async def read_file(params: ReadFileParams, ctx: ToolContext) -> ToolOutcome:
    target = ctx.path("path")
    if not target.exists():
        return _fail(f"File not found: {params.path}")
    if not target.is_file():
        return _fail(f"Not a file: {params.path}")
    size = target.stat().st_size
    if size > _MAX_FILE_SIZE:
        return _fail(
            f"File too large: {size:,} bytes (limit: {_MAX_FILE_SIZE:,} bytes). "
            "Use start_line/end_line to read portions."
        )

    content = await asyncio.to_thread(_read_text, target)
    ctx.session.mark_read(str(target))
    if not content:
        return _ok("(empty file)", file_path=str(target))
    return _ok(_number_lines(content, params.start_line, params.end_line), file_path=str(target))


async def read_multiple_files(params: ReadMultipleFilesParams, ctx: ToolContext) -> ToolOutcome:
    sections = []
    for raw, target in zip(params.paths, ctx.paths["paths"]):
        if not target.is_file():
            sections.append(f"### {raw}\n[File not found]")
            continue
        content = await asyncio.to_thread(_read_text, target)
        ctx.session.mark_read(str(target))
        sections.append(f"### {raw}\n{_number_lines(content, None, None)}")
    return _ok("\n\n".join(sections))


async def list_directory(params: ListDirectoryParams, ctx: ToolContext) -> ToolOutcome:
    target = ctx.path("path")
    if not target.is_dir():
        return _fail(f"Directory not found: {params.path}")

    def _list() -> list[str]:
        entries = sorted(target.iterdir(), key=lambda p: (not p.is_dir(), p.name.lower()))
        return [f"{p.name}/" if p.is_dir() else p.name for p in entries]

    names = await asyncio.to_thread(_list)
    if not names:
        return _ok("(empty directory)")
    extra = len(names) - _MAX_LIST_ENTRIES
    text = "\n".join(names[:_MAX_LIST_ENTRIES])
    if extra > 0:
        text += f"\n... ({extra} more entries)"
    return _ok(text)


def _tree(root: Path, max_depth: int) -> list[str]:
    lines = [f"{root.name or root}/"]

    def walk(directory: Path, depth: int, indent: str) -> None:
        if depth > max_depth or len(lines) >= _MAX_TREE_ENTRIES:
            return
        try:
            children = sorted(directory.iterdir(), key=lambda p: (not p.is_dir(), p.name.lower()))
        except OSError:
            return
        for child in children:
            if len(lines) >= _MAX_TREE_ENTRIES:
                lines.append(f"{indent}...")
                return
            if child.is_dir():
                if child.name in IGNORED_DIRS:
                    continue
                lines.append(f"{indent}{child.name}/")
                walk(child, depth + 1, indent + "  ")
            else:
                lines.append(f"{indent}{child.name}")

    walk(root, 1, "  ")
    return lines


async def get_dir_tree(params: DirTreeParams, ctx: ToolContext) -> ToolOutcome:
    target = ctx.path("path")
    if not target.is_dir():
        return _fail(f"Directory not found: {params.path}")
    lines = await asyncio.to_thread(_tree, target, params.max_depth)
    return _ok("\n".join(lines))


def _search(root: Path, workspace: Path, params: SearchFilesParams) -> list[str]:
    source = params.pattern if params.is_regex else re.escape(params.pattern)
    regex = re.compile(source, re.IGNORECASE)

    hits: list[str] = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if d not in IGNORED_DIRS)
        for filename in sorted(filenames):
            if params.file_pattern and not fnmatch.fnmatch(filename, params.file_pattern):
                continue
            path = Path(dirpath) / filename
            try:
                if path.stat().st_size > _MAX_FILE_SIZE:
                    continue
                with path.open(encoding="utf-8") as fh:
                    for lineno, line in enumerate(fh, 1):
                        if regex.search(line):
                            hits.append(f"{display_path(path, workspace)}:{lineno}: {line.strip()}")
                            if len(hits) >= _MAX_SEARCH_HITS:
                                return hits
            except (OSError, UnicodeDecodeError):
                continue  # unreadable or binary
    return hits


async def search_files(params: SearchFilesParams, ctx: ToolContext) -> ToolOutcome:
    target = ctx.path("path")
    if not target.is_dir():
        return _fail(f"Directory not found: {params.path}")
    if params.is_regex:
        try:
            re.compile(params.pattern)
        except re.error as e:
            return _fail(f"Invalid regex: {e}")
    hits = await asyncio.to_thread(_search, target, ctx.workspace_root, params)
    if not hits:
        return _ok("No matches found")
    text = "\n".join(hits)
    if len(hits) >= _MAX_SEARCH_HITS:
        text += f"\n... (stopped at {_MAX_SEARCH_HITS} matches)"
    return _ok(text)


# ---------------------------------------------------------------------------
# Write handlers
# ---------------------------------------------------------------------------


async def edit_file(params: EditFileParams, ctx: ToolContext) -> ToolOutcome:
    target = ctx.path("path")
    if not target.is_file():
        return _fail(f"File not found: {params.path}")

    blocks = parse_blocks(params.search_replace_blocks)
    if not blocks:
        return _fail("No valid SEARCH/REPLACE blocks found.")

    original = await asyncio.to_thread(_read_text, target)
    result = apply_blocks(original, blocks)
    if result.errors:
        return _fail("\n".join(result.errors))

    await asyncio.to_thread(_write_text, target, result.content)
    ctx.session.mark_read(str(target))
    added, removed = line_changes(original, result.content)
    logger.info("Edited %s (%d blocks, +%d -%d)", target, result.applied, added, removed)
    return _ok(
        f"File updated successfully ({result.applied} block(s), +{added} -{removed} lines)",
        file_path=str(target),
        lines_added=added,
        lines_removed=removed,
    )


async def write_file(params: WriteFileParams, ctx: ToolContext) -> ToolOutcome:
    target = ctx.path("path")
    if target.is_dir():
        return _fail(f"Path is a directory: {params.path}")

    original = await asyncio.to_thread(_read_text, target) if target.exists() else ""
    await asyncio.to_thread(_write_text, target, params.content)
    ctx.session.mark_read(str(target))
    added, removed = line_changes(original, params.content)
    return _ok(
        f"File written successfully: {params.path} ({len(params.content):,} chars)",
        file_path=str(target),
        lines_added=added,
        lines_removed=removed,
    )


async def create_file_or_folder(params: CreateParams, ctx: ToolContext) -> ToolOutcome:
    target = ctx.path("path")
    if target.exists():
        return _fail(f"Already exists: {params.path}")

    if params.path.endswith(("/", "\\")):
        await asyncio.to_thread(target.mkdir, parents=True, exist_ok=True)
        return _ok(f"Folder created: {params.path}")

    await asyncio.to_thread(_write_text, target, params.content)
    ctx.session.mark_read(str(target))
    return _ok(f"File created: {params.path}", file_path=str(target), is_new_file=True)


async def delete_file_or_folder(params: DeleteParams, ctx: ToolContext) -> ToolOutcome:
    target = ctx.path("path")
    if target == ctx.workspace_root:
        return _fail("Cannot delete the workspace root")
    if not target.exists():
        return _fail(f"Not found: {params.path}")

    if target.is_dir():
        if any(target.iterdir()) and not params.recursive:
            return _fail(f"Folder is not empty: {params.path} (set recursive to delete it)")
        await asyncio.to_thread(shutil.rmtree, target)
    else:
        await asyncio.to_thread(target.unlink)

    prefix = str(target)
    ctx.session.read_paths = {p for p in ctx.session.read_paths if p != prefix and not p.startswith(prefix + os.sep)}
    logger.info("Deleted %s", target)
    return _ok(f"Deleted: {params.path}")


async def run_command(params: RunCommandParams, ctx: ToolContext) -> ToolOutcome:
    cwd = ctx.paths.get("cwd") or ctx.workspace_root
    if not Path(cwd).is_dir():
        return _fail(f"Working directory not found: {params.cwd}")
    effective_timeout = max(1, min(params.timeout, _MAX_COMMAND_TIMEOUT))

    proc = await asyncio.create_subprocess_shell(
        params.command,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=str(cwd),
    )
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=effective_timeout)
    except asyncio.TimeoutError:
        return _fail(f"Command timed out after {effective_timeout}s: {params.command}")
    finally:
        # also reached when the handler task itself is cancelled
        if proc.returncode is None:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            await proc.wait()

    stdout_text = stdout.decode("utf-8", errors="replace")
    stderr_text = stderr.decode("utf-8", errors="replace")
    if len(stdout_text) > _MAX_OUTPUT_CHARS:
        stdout_text = stdout_text[-_MAX_OUTPUT_CHARS:] + "\n... [output truncated at 100KB]"
    if len(stderr_text) > _MAX_OUTPUT_CHARS:
        stderr_text = stderr_text[-_MAX_OUTPUT_CHARS:] + "\n... [stderr truncated at 100KB]"

    parts = []
    if stdout_text:
        parts.append(stdout_text)
    if stderr_text:
        parts.append(f"STDERR:\n{stderr_text}")
    if proc.returncode != 0:
        parts.append(f"Exit code: {proc.returncode}")
    output = "\n".join(parts) if parts else "(no output)"

    if proc.returncode != 0:
        return ToolOutcome(success=False, result=output, error=output, meta={"exit_code": proc.returncode})
    return _ok(output, exit_code=0)


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


def register_builtin_tools(registry: ToolRegistry) -> None:
    """Register the file, directory, search and terminal tools."""
    read_only = [
        ToolDefinition(
            name="read_file",
            description="Read a file with line numbers. Optionally restrict to start_line..end_line.",
            params=ReadFileParams,
            handler=read_file,
            read_only=True,
            path_params=("path",),
            read_escape=True,
        ),
        ToolDefinition(
            name="read_multiple_files",
            description="Read several files at once, each with line numbers.",
            params=ReadMultipleFilesParams,
            handler=read_multiple_files,
            read_only=True,
            path_params=("paths",),
            read_escape=True,
        ),
        ToolDefinition(
            name="list_directory",
            description="List the entries of a directory. Folders end with /.",
            params=ListDirectoryParams,
            handler=list_directory,
            read_only=True,
            path_params=("path",),
            read_escape=True,
        ),
        ToolDefinition(
            name="get_dir_tree",
            description="Recursive directory tree, skipping build and VCS folders.",
            params=DirTreeParams,
            handler=get_dir_tree,
            read_only=True,
            path_params=("path",),
        ),
        ToolDefinition(
            name="search_files",
            description=f"Search file contents for text or a regex. Returns at most {_MAX_SEARCH_HITS} matches.",
            params=SearchFilesParams,
            handler=search_files,
            read_only=True,
            path_params=("path",),
        ),
    ]
    writes = [
        ToolDefinition(
            name="edit_file",
            description=(
                "Edit a file using SEARCH/REPLACE blocks. Format: "
                "<<<<<<< SEARCH\\nold\\n=======\\nnew\\n>>>>>>> REPLACE. "
                "The file must have been read first."
            ),
            params=EditFileParams,
            handler=edit_file,
            path_params=("path",),
            read_before_write="always",
        ),
        ToolDefinition(
            name="write_file",
            description="Write or overwrite an entire file. Existing files must be read first.",
            params=WriteFileParams,
            handler=write_file,
            path_params=("path",),
            read_before_write="if_exists",
        ),
        ToolDefinition(
            name="create_file_or_folder",
            description="Create a new file or folder. A path ending with / creates a folder.",
            params=CreateParams,
            handler=create_file_or_folder,
            path_params=("path",),
        ),
        ToolDefinition(
            name="delete_file_or_folder",
            description="Delete a file or folder.",
            params=DeleteParams,
            handler=delete_file_or_folder,
            approval=ApprovalType.DANGEROUS,
            path_params=("path",),
        ),
        ToolDefinition(
            name="run_command",
            description="Run a shell command in the workspace (or a cwd inside it).",
            params=RunCommandParams,
            handler=run_command,
            approval=ApprovalType.TERMINAL,
            path_params=("cwd",),
            timeout=_MAX_COMMAND_TIMEOUT + 10,
            snapshot_paths=False,
        ),
    ]
    for tool in read_only + writes:
        registry.register(tool)
