#!/usr/bin/env python3
from __future__ import annotations

import argparse
import os
import re
import shlex
import subprocess
import sys
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

BRANCH_MARKER = "[[branch]]"
LOG_FORMAT = "%at %ad %cn %s"
LIST_COMMAND_ENV = "STALE_BRANCHES_LIST_COMMAND"
AFFIRMATIVE_ANSWERS = ("yes", "y")
EXIT_ANSWERS = ("exit", "x")

Prompt = Callable[[str], str]
Runner = Callable[[Path, list[str], bool], str]


class StaleBranchesError(RuntimeError):
    pass


class UsageError(StaleBranchesError):
    pass


class RetrievalError(StaleBranchesError):
    pass


class ParseFailure(Enum):
    MISSING_MARKER = f"log entry missing branch marker {BRANCH_MARKER}"
    EMPTY_PAYLOAD = "nothing after branch marker"
    NO_REMOTE_SEPARATOR = "no remote branch split found"
    INCOMPLETE_IDENTITY = "unable to parse out remote and branch"


class BranchParseError(StaleBranchesError):
    def __init__(self, kind: ParseFailure, raw_line: str) -> None:
        super().__init__(f"unable to parse branch information ({kind.value}): {raw_line}")
        self.kind = kind
        self.raw_line = raw_line


class CommandFailed(StaleBranchesError):
    def __init__(self, command: str) -> None:
        super().__init__(f"command failed: {command}")
        self.command = command


class UserExit(Exception):
    pass


@dataclass(frozen=True)
class BranchRecord:
    remote_name: str
    branch_name: str
    raw_info: str

    @property
    def target(self) -> str:
        return f"{self.remote_name}/{self.branch_name}"


@dataclass
class RunStatistics:
    branch_count: int = 0
    delete_count: int = 0
    malformed_count: int = 0


def parse_branch(raw_line: str) -> BranchRecord:
    marker_idx = raw_line.find(BRANCH_MARKER)
    if marker_idx == -1:
        raise BranchParseError(ParseFailure.MISSING_MARKER, raw_line)

    payload = raw_line[marker_idx + len(BRANCH_MARKER) :].strip()
    if not payload:
        raise BranchParseError(ParseFailure.EMPTY_PAYLOAD, raw_line)

    remote_name, separator, branch_name = payload.partition("/")
    if not separator:
        raise BranchParseError(ParseFailure.NO_REMOTE_SEPARATOR, raw_line)
    if not remote_name or not branch_name:
        raise BranchParseError(ParseFailure.INCOMPLETE_IDENTITY, raw_line)

    return BranchRecord(remote_name=remote_name, branch_name=branch_name, raw_info=raw_line)


def echo_command(command: list[str]) -> str:
    return shlex.join(command)


def run_shell(working_dir: Path, command: list[str], ignore_errors: bool = False) -> str:
    echoed = echo_command(command)
    try:
        proc = subprocess.run(command, cwd=working_dir, text=True, capture_output=True)
        stderr = proc.stderr.strip()
        exec_error = f"exit status {proc.returncode}" if proc.returncode != 0 else ""
    except OSError as error:
        stderr = ""
        exec_error = str(error)

    if not ignore_errors and (stderr or exec_error):
        if stderr:
            print(f"stderr: {stderr}", file=sys.stderr)
        if exec_error:
            print(f"exec error: {exec_error}", file=sys.stderr)
        raise CommandFailed(echoed)

    print(f"Ran: {echoed}")
    return echoed


def ask(prompt: Prompt, question: str) -> str | None:
    try:
        return prompt(question)
    except (EOFError, KeyboardInterrupt):
        print("")
        return None


def remote_delete_command(branch: BranchRecord) -> list[str]:
    return ["git", "push", "--porcelain", branch.remote_name, f":{branch.branch_name}"]


def local_delete_command(branch: BranchRecord) -> list[str]:
    return ["git", "branch", "-D", branch.branch_name]


def confirm_and_delete(
    working_dir: Path,
    branch: BranchRecord,
    prompt: Prompt = input,
    runner: Runner = run_shell,
) -> str | None:
    command = remote_delete_command(branch)
    answer = ask(prompt, f"Run `{echo_command(command)}`? (yes/no) ")
    if answer not in AFFIRMATIVE_ANSWERS:
        print(f"Skipping {branch.target}")
        return None

    deleted = runner(working_dir, command, False)
    # Local branch may not exist; its cleanup never fails the deletion.
    runner(working_dir, local_delete_command(branch), True)
    return deleted


def review_branches(
    working_dir: Path,
    raw_lines: Iterable[str],
    prompt: Prompt = input,
    runner: Runner = run_shell,
    skip_malformed: bool = False,
) -> tuple[RunStatistics, BaseException | None]:
    stats = RunStatistics()
    for raw_line in raw_lines:
        if not raw_line:
            continue

        stats.branch_count += 1
        try:
            branch = parse_branch(raw_line)
        except BranchParseError as error:
            if not skip_malformed:
                return stats, error
            stats.malformed_count += 1
            print(f"warning: skipping malformed entry: {error}", file=sys.stderr)
            continue

        print("")
        print(branch.raw_info)
        answer = ask(prompt, f"Delete branch {branch.target}? (yes/no/exit) ")
        if answer is None or answer in EXIT_ANSWERS:
            return stats, UserExit()
        if answer not in AFFIRMATIVE_ANSWERS:
            print(f"Skipping {branch.target}")
            continue

        try:
            deleted = confirm_and_delete(working_dir, branch, prompt=prompt, runner=runner)
        except StaleBranchesError as error:
            return stats, error
        if deleted is not None:
            stats.delete_count += 1

    return stats, None


def remote_refs(branch_output: str) -> list[str]:
    refs: list[str] = []
    for line in branch_output.splitlines():
        if "->" in line:
            continue
        ref = line[2:].strip()
        if ref:
            refs.append(ref)
    return refs


def format_listing_line(log_text: str, ref: str) -> str:
    return " ".join([*log_text.split(), BRANCH_MARKER, ref])


def run_git(args: list[str], repo_root: Path) -> subprocess.CompletedProcess[str]:
    command = ["git", *args]
    try:
        return subprocess.run(command, cwd=repo_root, text=True, capture_output=True)
    except OSError as error:
        raise RetrievalError(f"unable to run {echo_command(command)}: {error}") from error


def list_remote_branches(repo_root: Path) -> subprocess.CompletedProcess[str]:
    # Not a git repository: empty, clean result.
    probe = run_git(["rev-parse", "--git-dir"], repo_root)
    if probe.returncode != 0:
        return subprocess.CompletedProcess(probe.args, 0, stdout="", stderr="")

    branches = run_git(["branch", "-r"], repo_root)
    if branches.returncode != 0 or branches.stderr.strip():
        return branches

    lines: list[str] = []
    for ref in remote_refs(branches.stdout):
        log = run_git(["log", "-1", f"--pretty=format:{LOG_FORMAT}", ref, "--"], repo_root)
        if log.returncode != 0 or log.stderr.strip():
            return log
        lines.append(format_listing_line(log.stdout, ref))

    lines.sort()
    return subprocess.CompletedProcess(branches.args, 0, stdout="\n".join(lines), stderr="")


def run_list_command(list_command: str, target: Path) -> subprocess.CompletedProcess[str]:
    command = [*shlex.split(list_command), str(target)]
    try:
        return subprocess.run(command, cwd=target, text=True, capture_output=True)
    except OSError as error:
        raise RetrievalError(f"unable to run list command {echo_command(command)}: {error}") from error


def resolve_list_command(cli_value: str | None) -> str | None:
    if cli_value is not None:
        return cli_value.strip() or None
    env_value = os.environ.get(LIST_COMMAND_ENV, "").strip()
    return env_value or None


def validate_target(raw_path: str) -> Path:
    target = Path(raw_path).expanduser().resolve()
    if not target.exists():
        raise UsageError(f"path does not exist: {target}")
    if not target.is_dir():
        raise UsageError(f"path is not a directory: {target}")
    return target


def split_records(output: str) -> list[str]:
    return re.split(r"\r\n|\r|\n", output)


def retrieve_listing(target: Path, list_command: str | None) -> str:
    if list_command:
        proc = run_list_command(list_command, target)
    else:
        proc = list_remote_branches(target)

    stderr = proc.stderr.strip()
    if proc.returncode != 0 or stderr:
        if stderr:
            print(f"stderr: {stderr}", file=sys.stderr)
        raise RetrievalError(f"branch listing failed (exit status {proc.returncode})")
    return proc.stdout


def print_statistics(stats: RunStatistics, skip_malformed: bool) -> None:
    print("")
    print(f"branch_count={stats.branch_count}")
    print(f"delete_count={stats.delete_count}")
    if skip_malformed:
        print(f"malformed_count={stats.malformed_count}")


def run_session(
    target: Path,
    list_command: str | None = None,
    prompt: Prompt = input,
    runner: Runner = run_shell,
    skip_malformed: bool = False,
) -> int:
    output = retrieve_listing(target, list_command)
    if not output.strip():
        print(f"no git repository found at {target}")
        return 0

    stats, stop = review_branches(
        target,
        split_records(output),
        prompt=prompt,
        runner=runner,
        skip_malformed=skip_malformed,
    )
    print_statistics(stats, skip_malformed)

    if stop is None:
        return 0
    if isinstance(stop, UserExit):
        print("exit: review stopped by operator")
        return 0
    print(f"error: {stop}", file=sys.stderr)
    return 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Review remote branches oldest-first and delete the stale ones interactively"
    )
    parser.add_argument("target_path", help="Folder containing a git repository")
    parser.add_argument(
        "--list-command",
        help=f"External branch listing command, given the target path (default: built-in or {LIST_COMMAND_ENV})",
    )
    parser.add_argument(
        "--skip-malformed",
        action="store_true",
        help="Skip unparseable listing entries instead of stopping the review",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        target = validate_target(args.target_path)
        return run_session(
            target,
            list_command=resolve_list_command(args.list_command),
            skip_malformed=args.skip_malformed,
        )
    except StaleBranchesError as error:
        print(f"error: {error}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
