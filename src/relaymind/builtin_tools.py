"""
Built-in tools: files, shell and checkpoint access.

Relative paths resolve against the calling agent's working directory,
which change_directory updates. write_file, update_file, delete_file and
run_command are destructive and require confirmation in safe mode.
"""

import fnmatch
import logging
import os
import subprocess
from pathlib import Path
from typing import Any

from relaymind.storage import CheckpointStore
from relaymind.tools import ToolContext, ToolRegistry

logger = logging.getLogger(__name__)

DEFAULT_COMMAND_TIMEOUT = 45
DEFAULT_IGNORE = ["node_modules/**", ".git/**"]
MAX_LISTED_FILES = 2000


def resolve_path(path: str, context: ToolContext) -> Path:
    p = Path(path).expanduser()
    if p.is_absolute():
        return p
    base = context.agent.cwd if context.agent is not None else Path.cwd()
    return (base / p).resolve()


def _cwd(context: ToolContext) -> Path:
    return context.agent.cwd if context.agent is not None else Path.cwd()


def read_file(args: dict[str, Any], context: ToolContext) -> str:
    path = resolve_path(args["path"], context)
    if not path.is_file():
        raise FileNotFoundError(f"File not found: {path}")
    return path.read_text(encoding="utf-8", errors="replace")


def write_file(args: dict[str, Any], context: ToolContext) -> str:
    path = resolve_path(args["path"], context)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(args["content"], encoding="utf-8")
    return f"Successfully wrote {len(args['content'])} characters to {path}"


def update_file(args: dict[str, Any], context: ToolContext) -> str:
    path = resolve_path(args["path"], context)
    content = path.read_text(encoding="utf-8")
    if args["search_text"] not in content:
        return f"Error: search_text not found in {path}"
    path.write_text(content.replace(args["search_text"], args["replace_text"], 1), encoding="utf-8")
    return f"Successfully updated {path}"


def delete_file(args: dict[str, Any], context: ToolContext) -> str:
    path = resolve_path(args["path"], context)
    if not path.exists():
        return f"File {path} does not exist."
    if path.is_dir():
        return f"Error: {path} is a directory."
    path.unlink()
    return f"Successfully deleted {path}"


def run_command(args: dict[str, Any], context: ToolContext, timeout: float = DEFAULT_COMMAND_TIMEOUT) -> str:
    command = args["command"]
    logger.info(f"Running command in {_cwd(context)}: {command}")
    try:
        result = subprocess.run(
            command,
            shell=True,
            cwd=_cwd(context),
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired:
        return f"Error: Command timed out after {timeout} seconds"

    if result.returncode != 0:
        return f"Error (exit code {result.returncode}): {result.stderr or result.stdout}".rstrip()
    return result.stdout or result.stderr or "Command executed with no output."


def list_files(args: dict[str, Any], context: ToolContext) -> str:
    root = resolve_path(args.get("path") or ".", context)
    ignore = args.get("ignore") or DEFAULT_IGNORE
    if not root.is_dir():
        raise NotADirectoryError(f"Not a directory: {root}")

    found = []
    for dirpath, dirnames, filenames in os.walk(root):
        rel_dir = Path(dirpath).relative_to(root)
        dirnames[:] = [
            d for d in sorted(dirnames)
            if not any(fnmatch.fnmatch(f"{(rel_dir / d).as_posix()}/", p.rstrip("*")) for p in ignore)
        ]
        for name in sorted(filenames):
            rel = (rel_dir / name).as_posix()
            if any(fnmatch.fnmatch(rel, p) for p in ignore):
                continue
            found.append(str(Path(dirpath) / name))
            if len(found) >= MAX_LISTED_FILES:
                found.append(f"[... stopped after {MAX_LISTED_FILES} files ...]")
                return "\n".join(found)
    return "\n".join(found)


def read_dir(args: dict[str, Any], context: ToolContext) -> str:
    path = resolve_path(args.get("path") or ".", context)
    entries = sorted(p.name + ("/" if p.is_dir() else "") for p in path.iterdir())
    return f"Contents of {path}:\n" + "\n".join(entries)


def change_directory(args: dict[str, Any], context: ToolContext) -> str:
    path = resolve_path(args["path"], context)
    if not path.is_dir():
        return f"Error: {path} is not a directory."
    if context.agent is not None:
        context.agent.cwd = path
    return f"Changed directory to {path}"


def _path_schema(description: str, required: bool = True) -> dict[str, Any]:
    return {
        "type": "object",
        "properties": {"path": {"type": "string", "description": description}},
        "required": ["path"] if required else [],
    }


def register_builtin_tools(
    registry: ToolRegistry,
    checkpoints: CheckpointStore | None = None,
    command_timeout: float = DEFAULT_COMMAND_TIMEOUT,
) -> ToolRegistry:
    """Register the file, shell and (if a store is given) checkpoint tools."""
    registry.register_function(
        name="read_file",
        description="Read the content of a file. Use this to inspect code or text files.",
        parameters=_path_schema("The relative or absolute path to the file."),
        handler=read_file,
        aliases=("cat",),
    )
    registry.register_function(
        name="write_file",
        description="Write content to a file. Overwrites existing files or creates new ones.",
        parameters={
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "The path to the file."},
                "content": {"type": "string", "description": "The content to write."},
            },
            "required": ["path", "content"],
        },
        handler=write_file,
        destructive=True,
    )
    registry.register_function(
        name="update_file",
        description="Replace text in a file. Useful for editing large files without rewriting everything.",
        parameters={
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "The path to the file."},
                "search_text": {"type": "string", "description": "The exact text to search for."},
                "replace_text": {"type": "string", "description": "The new text to replace with."},
            },
            "required": ["path", "search_text", "replace_text"],
        },
        handler=update_file,
        destructive=True,
        aliases=("edit_file",),
    )
    registry.register_function(
        name="delete_file",
        description="Delete a file. CAUTION: This is destructive.",
        parameters=_path_schema("The path to the file to delete."),
        handler=delete_file,
        destructive=True,
    )
    registry.register_function(
        name="run_command",
        description="Execute a shell command in the current working directory.",
        parameters={
            "type": "object",
            "properties": {"command": {"type": "string", "description": "The shell command to execute."}},
            "required": ["command"],
        },
        handler=lambda args, context: run_command(args, context, timeout=command_timeout),
        destructive=True,
        aliases=("bash", "shell"),
    )
    registry.register_function(
        name="list_files",
        description="List all files in a directory recursively.",
        parameters={
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "The directory path (default: current directory)."},
                "ignore": {
                    "type": "array",
                    "items": {"type": "string"},
                    "description": "Glob patterns to ignore.",
                },
            },
            "required": [],
        },
        handler=list_files,
    )
    registry.register_function(
        name="read_dir",
        description="List files and directories in a specific directory (non-recursive ls).",
        parameters=_path_schema("The directory path (default: current directory).", required=False),
        handler=read_dir,
        aliases=("ls",),
    )
    registry.register_function(
        name="change_directory",
        description="Change the current working directory (cd).",
        parameters=_path_schema("The target directory path."),
        handler=change_directory,
        aliases=("cd",),
    )

    if checkpoints is not None:
        def read_checkpoint(args: dict[str, Any], context: ToolContext) -> str:
            checkpoint = checkpoints.load_checkpoint(args["id"])
            if checkpoint is None:
                return f"Checkpoint {args['id']} not found."
            return checkpoint.render()

        def list_checkpoints(args: dict[str, Any], context: ToolContext) -> str:
            entries = checkpoints.list_checkpoints()
            if not entries:
                return "No checkpoints found."
            return "Available Checkpoints:\n" + "\n".join(
                f"- {c['id']} ({c['timestamp']}): {c['summary'][:200]}" for c in entries
            )

        registry.register_function(
            name="read_checkpoint",
            description="Read the archived messages and summary of a memory checkpoint.",
            parameters={
                "type": "object",
                "properties": {"id": {"type": "string", "description": "The checkpoint id."}},
                "required": ["id"],
            },
            handler=read_checkpoint,
        )
        registry.register_function(
            name="list_checkpoints",
            description="List the available memory checkpoints, newest first.",
            parameters={"type": "object", "properties": {}, "required": []},
            handler=list_checkpoints,
        )
    return registry
