"""Command-line entry point: one-shot runs and the interactive REPL."""

import argparse
import logging
import os
import sys
import threading
from importlib import metadata
from pathlib import Path

from . import fmt
from .adapters import PROVIDERS, make_provider
from .agent import STOP_COMPLETE, STOP_INTERRUPTED, Agent
from .builtin_tools import default_registry
from .config import (
    _UNSET,
    apply_config_to_args,
    generate_config,
    load_config,
    resolve_api_key,
)
from .context import Compactor, LLMSummarizer, estimate_tokens
from .permission import MODE_YOLO, MODES, PermissionPolicy
from .prompt import build_system_prompt
from .report import AgentError, ReportCollector
from .session import Session, SQLiteStore, default_db_path
from .tools import ToolExecutor
from .ui import ConsoleIO

logger = logging.getLogger(__name__)

# argparse append actions cannot start from _UNSET
_APPEND_DESTS = ("allowed_commands", "denied_commands", "allowed_paths")


def build_parser():
    """Build and return the argument parser."""
    parser = argparse.ArgumentParser(
        prog="kestrel",
        usage="%(prog)s [options] <question>\n       %(prog)s --repl [options] [question]",
        description="A streaming coding agent with budgeted context and permission-gated tools.",
    )
    parser.add_argument("--version", action="store_true", help="Print the version and exit.")
    parser.add_argument(
        "question", nargs="?", default=None, help="The question or task for the model."
    )
    parser.add_argument(
        "--repl",
        action="store_true",
        help="Start an interactive session instead of answering a single question.",
    )
    parser.add_argument(
        "--base-dir",
        default=None,
        help="Project directory the tools work in (default: current directory).",
    )

    provider = parser.add_argument_group("provider")
    provider.add_argument(
        "--provider", choices=sorted(PROVIDERS), default=_UNSET, help="LLM vendor protocol."
    )
    provider.add_argument("--model", default=_UNSET, help="Model name.")
    provider.add_argument(
        "--api-key", default=_UNSET, help="API key (overrides the environment variable)."
    )
    provider.add_argument(
        "--base-url", default=_UNSET, help="Server base URL for OpenAI-compatible servers."
    )
    provider.add_argument(
        "--max-output-tokens", type=int, default=_UNSET, help="Maximum output tokens per call."
    )
    provider.add_argument(
        "--context-window",
        type=int,
        default=_UNSET,
        help="Context window size in tokens (default: the provider's).",
    )

    loop = parser.add_argument_group("agent")
    loop.add_argument(
        "--max-iterations",
        type=int,
        default=_UNSET,
        help="Model calls allowed per turn, 0 for unlimited (default: 50).",
    )
    loop.add_argument(
        "--tool-timeout",
        type=float,
        default=_UNSET,
        help="Per-tool-call timeout in seconds (default: 120).",
    )
    loop.add_argument("--system-prompt", default=_UNSET, help="Replace the default system prompt.")
    loop.add_argument(
        "--no-instructions",
        action="store_true",
        default=_UNSET,
        help="Do not load KESTREL.md / AGENTS.md from the project.",
    )

    perms = parser.add_argument_group("permissions")
    mode = perms.add_mutually_exclusive_group()
    mode.add_argument("--mode", choices=MODES, default=_UNSET, help="Permission mode.")
    mode.add_argument(
        "--yolo",
        dest="mode",
        action="store_const",
        const=MODE_YOLO,
        default=_UNSET,
        help="Allow every tool call that is not on the deny list.",
    )
    perms.add_argument(
        "--allow-command",
        dest="allowed_commands",
        action="append",
        default=None,
        metavar="PREFIX",
        help="Shell command prefix that runs without confirmation (repeatable).",
    )
    perms.add_argument(
        "--deny-command",
        dest="denied_commands",
        action="append",
        default=None,
        metavar="TEXT",
        help="Substring that blocks a shell command outright (repeatable).",
    )
    perms.add_argument(
        "--allow-path",
        dest="allowed_paths",
        action="append",
        default=None,
        metavar="GLOB",
        help="Glob of paths write tools may touch, e.g. './src/**' (repeatable).",
    )

    sessions = parser.add_argument_group("sessions")
    sessions.add_argument("--db-path", default=_UNSET, help="Session database path.")
    sessions.add_argument("--resume", metavar="ID", default=None, help="Resume a stored session.")
    sessions.add_argument(
        "--list-sessions", action="store_true", help="List stored sessions and exit."
    )
    sessions.add_argument(
        "--delete-session", metavar="ID", default=None, help="Delete a stored session and exit."
    )

    out = parser.add_argument_group("output")
    out.add_argument(
        "--report", metavar="FILE", default=None, help="Write a JSON run report (one-shot only)."
    )
    color = out.add_mutually_exclusive_group()
    color.add_argument("--color", action="store_true", default=_UNSET, help="Force color.")
    color.add_argument("--no-color", action="store_true", default=_UNSET, help="Disable color.")
    out.add_argument(
        "-q", "--quiet", action="store_true", default=_UNSET, help="Only print the answer."
    )
    out.add_argument(
        "-v", "--verbose", action="store_true", help="Log debug diagnostics to stderr."
    )
    out.add_argument(
        "--init-config",
        action="store_true",
        help="Print a commented config template and exit.",
    )
    out.add_argument(
        "--project",
        action="store_true",
        help="With --init-config, print the project (kestrel.toml) variant.",
    )
    return parser


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.version:
        try:
            version = metadata.version("kestrel")
        except metadata.PackageNotFoundError:
            version = "unknown"
        print(version)
        return 0

    if args.init_config:
        print(generate_config(project=args.project))
        return 0

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    if args.report and args.repl:
        parser.error("--report is incompatible with --repl")

    for dest in _APPEND_DESTS:
        if getattr(args, dest) is None:
            setattr(args, dest, _UNSET)

    base_dir = str(Path(args.base_dir or os.getcwd()).resolve())
    try:
        apply_config_to_args(args, load_config(Path(base_dir)))
        fmt.init(color=args.color, no_color=args.no_color)
        return _run_main(args, base_dir, parser)
    except AgentError as e:
        fmt.error(str(e))
        return 1


def _run_main(args, base_dir: str, parser) -> int:
    store = SQLiteStore(args.db_path or default_db_path())
    try:
        if args.list_sessions:
            fmt.session_table(store.list())
            return 0
        if args.delete_session:
            store.delete(args.delete_session)
            fmt.info(f"deleted session {args.delete_session}")
            return 0
        if not args.repl and args.question is None:
            parser.error("question is required (or use --repl)")

        session = store.load(args.resume) if args.resume else Session.new()
        logger.debug("session %s (%d messages)", session.id, len(session.messages))
        report = ReportCollector() if args.report else None
        agent = build_agent(args, base_dir, session, store, report=report)

        if args.repl:
            repl_loop(agent, base_dir, verbose=not args.quiet, initial=args.question)
            return 0
        return run_once(agent, args, report)
    finally:
        store.close()


def build_agent(args, base_dir: str, session: Session, store, report=None) -> Agent:
    """Wire provider, policy, tools and UI into an Agent from parsed args."""
    provider = make_provider(
        args.provider,
        model=args.model,
        context_window=args.context_window,
        api_key=resolve_api_key(args.provider, args.api_key),
        base_url=args.base_url,
    )
    policy = PermissionPolicy(
        mode=args.mode,
        auto_approve_tools=args.auto_approve_tools,
        allowed_commands=args.allowed_commands,
        denied_commands=args.denied_commands,
        allowed_paths=args.allowed_paths,
    )
    verbose = not args.quiet
    io = ConsoleIO(verbose=verbose)
    executor = ToolExecutor(
        default_registry(base_dir, unrestricted=args.mode == MODE_YOLO),
        policy,
        confirmer=io,
        timeout=args.tool_timeout,
    )
    system_prompt, loaded = build_system_prompt(
        base_dir, args.system_prompt, instructions=not args.no_instructions
    )
    if verbose:
        for name in loaded:
            fmt.info(f"Loaded {name}")
        fmt.info(f"Using {provider.name} model {provider.default_model()}")

    return Agent(
        provider,
        executor,
        session,
        io=io,
        store=store,
        compactor=Compactor(LLMSummarizer(provider)),
        system_prompt=system_prompt,
        max_iterations=args.max_iterations,
        max_output_tokens=args.max_output_tokens,
        context_window=args.context_window,
        report=report,
    )


def run_interruptible(agent: Agent, fn, *fn_args):
    """Run *fn* on a worker thread; Ctrl-C cancels the current turn instead of killing us."""
    box: dict = {}

    def target():
        try:
            box["result"] = fn(*fn_args)
        except BaseException as e:
            box["error"] = e

    # Confirmations raised by the worker are asked here, where Ctrl-C lands.
    serve_prompts = getattr(getattr(agent, "io", None), "serve_prompts", None)
    worker = threading.Thread(target=target, name="turn", daemon=True)
    worker.start()
    while worker.is_alive():
        try:
            if serve_prompts is not None:
                serve_prompts(0.1)
            else:
                worker.join(0.1)
        except KeyboardInterrupt:
            agent.cancel_turn()
    if "error" in box:
        raise box["error"]
    return box.get("result")


def run_once(agent: Agent, args, report: ReportCollector | None) -> int:
    result = run_interruptible(agent, agent.submit, args.question)
    if result is None:
        outcome, exit_code = "error", 1
    elif result.stop_reason == STOP_COMPLETE:
        outcome, exit_code = "success", 0
    elif result.stop_reason == STOP_INTERRUPTED:
        outcome, exit_code = "interrupted", 130
    else:
        outcome, exit_code = result.stop_reason, 2

    if report is not None:
        report.finalize(
            task=args.question,
            model=agent.provider.default_model(),
            provider=agent.provider.name,
            settings={
                "mode": args.mode,
                "max_iterations": args.max_iterations,
                "context_window": agent.context_window,
                "allowed_commands": list(args.allowed_commands),
            },
            outcome=outcome,
            answer=result.text if result else None,
            exit_code=exit_code,
            iterations=result.iterations if result else report.max_iteration_seen,
        )
        try:
            report.write(args.report)
        except OSError as e:
            fmt.error(f"Failed to write report to {args.report}: {e}")
    return exit_code


# -- REPL --------------------------------------------------------------------


def _repl_help() -> None:
    fmt.info(
        "Available commands:\n"
        "  /help              Show this help message\n"
        "  /clear             Reset the conversation\n"
        "  /compact           Summarize older turns now\n"
        "  /tokens            Show token usage\n"
        "  /approvals         List approvals remembered this session\n"
        "  /reset-approvals   Forget remembered approvals\n"
        "  /sessions          List stored sessions\n"
        "  /exit, /quit       Exit the REPL"
    )


def _repl_tokens(agent: Agent) -> None:
    session = agent.session
    prompt = session.prompt_tokens or estimate_tokens(session.messages)
    fmt.context_stats(prompt, session.tokens_used, agent.context_window)


def _repl_approvals(agent: Agent) -> None:
    approvals = agent.executor.policy.approvals()
    if not approvals:
        fmt.info("no remembered approvals")
        return
    fmt.info("Remembered approvals:\n" + "\n".join(f"  {a}" for a in approvals))


def handle_command(agent: Agent, line: str) -> bool:
    """Run a REPL slash command. Returns False if *line* is not a known command."""
    cmd = line.split(None, 1)[0].lower()
    if cmd == "/help":
        _repl_help()
    elif cmd == "/clear":
        agent.clear()
        agent.save()
    elif cmd == "/compact":
        agent.compact_now()
        agent.save()
    elif cmd == "/tokens":
        _repl_tokens(agent)
    elif cmd == "/approvals":
        _repl_approvals(agent)
    elif cmd == "/reset-approvals":
        agent.executor.policy.reset_approvals()
        fmt.info("approvals cleared")
    elif cmd == "/sessions":
        if agent.store is None:
            fmt.info("no session store configured")
        else:
            fmt.session_table(agent.store.list())
    else:
        return False
    return True


def repl_loop(agent: Agent, base_dir: str, *, verbose: bool = True, initial: str | None = None) -> None:
    """Interactive read-eval-print loop. The session is saved on every exit path."""
    from prompt_toolkit import PromptSession
    from prompt_toolkit.formatted_text import FormattedText
    from prompt_toolkit.history import FileHistory

    history_path = os.path.join(base_dir, ".kestrel", "repl_history")
    os.makedirs(os.path.dirname(history_path), exist_ok=True)
    prompt_session = PromptSession(
        history=FileHistory(history_path),
        enable_history_search=True,
    )
    prompt_text = FormattedText([("bold fg:ansigreen", "kestrel> ")])

    if verbose:
        fmt.repl_banner(agent.session.id)

    try:
        if initial:
            run_interruptible(agent, agent.submit, initial)
        while True:
            try:
                print(file=sys.stderr)
                line = prompt_session.prompt(prompt_text)
            except (EOFError, KeyboardInterrupt):
                print(file=sys.stderr)
                break

            line = line.strip()
            if not line:
                continue
            if line in ("/exit", "/quit"):
                break
            if line.startswith("/"):
                try:
                    if handle_command(agent, line):
                        continue
                except KeyboardInterrupt:
                    fmt.warning("interrupted, command aborted.")
                    continue

            run_interruptible(agent, agent.submit, line)
    finally:
        agent.save()
        if verbose:
            fmt.info(f"session saved: {agent.session.id}")


if __name__ == "__main__":
    sys.exit(main())
