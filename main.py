#!/usr/bin/env python3
"""
Proxmox Manager - An interactive shell for inspecting and maintaining a Proxmox host
"""

import io
import sys
import shlex
import logging
import argparse
from typing import Callable, Dict, List, Optional
from pathlib import Path
from rich.console import Console
from rich.logging import RichHandler
from rich.markdown import Markdown
from rich.markup import escape
from rich.panel import Panel
from rich.syntax import Syntax
from rich.table import Table
from rich.text import Text
from rich.theme import Theme
from prompt_toolkit import PromptSession
from prompt_toolkit.history import FileHistory
from prompt_toolkit.styles import Style
from prompt_toolkit.key_binding import KeyBindings
from prompt_toolkit.formatted_text import ANSI, HTML, merge_formatted_text

from catalog import WorkloadKind
from control_engine import ControlEngine
from errors import ManagerError
from host_indexer import HostIndexer
from models import ControlAction, ScriptResult, Workload, WorkloadStatus
from settings import Settings

logger = logging.getLogger(__name__)

_proxmox_theme = Theme({
    "markdown.code":       "bold #fe8019",
    "markdown.list":       "#E57000",
    "markdown.link":       "bold #fabd2f",
    "markdown.link_url":   "underline #fabd2f",
})
console = Console(theme=_proxmox_theme)

prompt_style = Style.from_dict(
    {
        "prompt": "#E57000 bold",  # Proxmox orange
        "input": "#ffffff",
    }
)

_STATUS_STYLE = {
    WorkloadStatus.RUNNING: "bold green",
    WorkloadStatus.STOPPED: "red",
    WorkloadStatus.UNKNOWN: "dim",
}

_SCRIPT_COMMANDS = {
    "container-fix": "run_container_fix_script",
    "media-services-fix": "run_media_services_fix",
    "hardware-optimization": "run_hardware_optimization",
    "duckdns-update": "update_duckdns",
}

WELCOME_TEXT = """# Proxmox Manager

Connected to **{host}** ({count} cataloged workloads).

Type `/overview` to see every container and VM, `/maintenance` for services,
binaries and config files, or `/help` for the full command list.
"""

HELP_ROWS = [
    ("/overview", "Status of every container and VM"),
    ("/maintenance", "Services, binaries, config files and host health"),
    ("/host", "Proxmox host information"),
    ("/cluster", "Cluster membership"),
    ("/status ID", "Live status of one container or VM"),
    ("/details ID", "OS and running services of a container"),
    ("/configs ID", "Known config files of a container"),
    ("/start ID", "Start a container or VM"),
    ("/stop ID", "Stop a container or VM"),
    ("/restart ID", "Restart a container or VM"),
    ("/service NAME ACTION [ID]", "start|stop|restart|enable|disable a service"),
    ("/check-service NAME [ID]", "Whether a service is active and enabled"),
    ("/check-binary NAME [ID]", "Path and version of a binary"),
    ("/check-config PATH [ID]", "Existence, permissions and size of a file"),
    ("/install", "Install missing binaries"),
    ("/fix", "Restart every inactive service"),
    ("/script NAME", ", ".join(_SCRIPT_COMMANDS)),
    ("/cat ID PATH", "Print a config file from a container or VM"),
    ("/suggest ID PATH", "AI suggestions for a container config file"),
    ("/update-host", "apt dist-upgrade on the host"),
    ("/reboot-host", "Reboot the host in one minute"),
    ("/shutdown-host", "Shut the host down in one minute"),
    ("/clear", "Clear the screen"),
    ("/exit", "Exit the shell"),
]


def _pct(value: float) -> str:
    return f"{value:.1f}%"


def _bool_mark(value: bool) -> str:
    return "[green]✓[/]" if value else "[red]✗[/]"


class ProxmoxShell:
    def __init__(self, engine: ControlEngine, debug: bool = False):
        self.engine = engine
        self.session = None
        self.debug = debug
        self._help_visible = False
        self._help_panel_cache = None
        self.commands: Dict[str, Callable[[List[str]], None]] = {
            "/overview": self.cmd_overview,
            "/maintenance": self.cmd_maintenance,
            "/host": self.cmd_host,
            "/cluster": self.cmd_cluster,
            "/status": self.cmd_status,
            "/details": self.cmd_details,
            "/configs": self.cmd_configs,
            "/start": lambda args: self.cmd_control(args, ControlAction.START),
            "/stop": lambda args: self.cmd_control(args, ControlAction.STOP),
            "/restart": lambda args: self.cmd_control(args, ControlAction.RESTART),
            "/service": self.cmd_service,
            "/check-service": self.cmd_check_service,
            "/check-binary": self.cmd_check_binary,
            "/check-config": self.cmd_check_config,
            "/install": self.cmd_install,
            "/fix": self.cmd_fix,
            "/script": self.cmd_script,
            "/cat": self.cmd_cat,
            "/suggest": self.cmd_suggest,
            "/update-host": lambda args: self.cmd_host_procedure("update"),
            "/reboot-host": lambda args: self.cmd_host_procedure("reboot"),
            "/shutdown-host": lambda args: self.cmd_host_procedure("shutdown"),
        }

    def setup_prompt_session(self):
        """Setup prompt_toolkit session with history"""
        history_file = Path.home() / ".proxmox_manager_history"

        kb = KeyBindings()

        @kb.add("f1")
        def _(event):
            self._help_visible = not self._help_visible
            self._help_panel_cache = ANSI(self._render_help_ansi()) if self._help_visible else None
            event.app.invalidate()

        def _bottom_toolbar():
            return HTML(
                '<style bg="#1f1f1f" fg="#E57000">'
                ' <b>F1</b> <style fg="#ebdbb2">commands</style>'
                ' │ <b>↑↓</b> <style fg="#ebdbb2">history</style>'
                ' │ <b>/overview</b>'
                ' │ <b>/maintenance</b>'
                ' │ <b>/exit</b>'
                ' </style>'
            )

        def _get_prompt_message():
            parts = []
            if self._help_visible and self._help_panel_cache is not None:
                parts.append(self._help_panel_cache)
            parts.append([("class:prompt", f"{self.engine.settings.ssh_host} ❯ ")])
            return merge_formatted_text(parts)

        self.session = PromptSession(
            history=FileHistory(str(history_file)),
            style=prompt_style,
            multiline=False,
            key_bindings=kb,
            bottom_toolbar=_bottom_toolbar,
        )
        self._prompt_message = _get_prompt_message

    def print_welcome(self):
        """Display welcome message"""
        welcome_text = WELCOME_TEXT.format(
            host=self.engine.settings.ssh_host,
            count=len(self.engine.catalog),
        )
        console.print(Panel(Markdown(welcome_text), border_style="#E57000"))
        console.print()

    def _build_help_table(self) -> Table:
        help_table = Table(show_header=False, box=None, padding=(0, 2), expand=True)
        help_table.add_column("Command", style="bold #E57000", no_wrap=True)
        help_table.add_column("Description", style="#ebdbb2")
        for command, description in HELP_ROWS:
            help_table.add_row(escape(command), escape(description))
        return help_table

    def _render_help_ansi(self) -> str:
        """Render the help panel to an ANSI string for use as prompt_toolkit message."""
        buf = io.StringIO()
        c = Console(
            file=buf,
            force_terminal=True,
            color_system="truecolor",
            width=console.width,
            theme=_proxmox_theme,
        )
        c.print(Panel(self._build_help_table(), title="Commands", border_style="#E57000"))
        return buf.getvalue()

    # ── Rendering ─────────────────────────────────────────────────────────────

    def _workload_table(self, title: str, workloads: List[Workload]) -> Table:
        table = Table(title=title, title_style="bold #fabd2f", header_style="bold #E57000")
        table.add_column("ID", justify="right")
        table.add_column("Name")
        table.add_column("Category", style="dim")
        table.add_column("Status")
        table.add_column("CPU", justify="right")
        table.add_column("Memory", justify="right")
        table.add_column("Uptime", justify="right")
        for w in workloads:
            style = _STATUS_STYLE.get(w.status, "")
            table.add_row(
                str(w.id),
                w.name,
                w.category,
                f"[{style}]{w.status.value}[/]" if style else w.status.value,
                _pct(w.cpu_usage),
                _pct(w.memory_usage),
                w.uptime,
            )
        return table

    def _print_script_result(self, result: ScriptResult):
        style = "green" if result.success else "bold red"
        mark = "✅" if result.success else "❌"
        seconds = result.duration.total_seconds()
        console.print(f"{mark} {result.name or 'script'} finished in {seconds:.1f}s", style=style)
        if result.output.strip():
            console.print(Panel(Text(result.output.rstrip()), border_style="dim", title="output"))

    # ── Commands ──────────────────────────────────────────────────────────────

    def cmd_overview(self, args: List[str]):
        with console.status("[#E57000]Collecting workload status…[/]", spinner="dots"):
            overview = self.engine.get_system_overview()
        console.print(
            f"Containers: [bold]{overview.running_containers}[/]/{overview.total_containers} running   "
            f"VMs: [bold]{overview.running_vms}[/]/{overview.total_vms} running"
        )
        console.print(self._workload_table("Containers", overview.containers))
        console.print(self._workload_table("Virtual Machines", overview.vms))
        for workload_id, error in sorted(overview.errors.items()):
            console.print(f"  [yellow]⚠ {workload_id}: {error}[/]")

    def cmd_maintenance(self, args: List[str]):
        with console.status("[#E57000]Running diagnostics…[/]", spinner="dots"):
            overview = self.engine.get_maintenance_overview()

        health = overview.system_health
        console.print(
            f"Disk {_pct(health.disk_usage)}  Memory {_pct(health.memory_usage)}  "
            f"CPU {_pct(health.cpu_load)}  Network {health.network_status}  Uptime {health.uptime}"
        )

        services = Table(title="Services", title_style="bold #fabd2f", header_style="bold #E57000")
        services.add_column("Service")
        services.add_column("Where")
        services.add_column("Active", justify="center")
        services.add_column("Enabled", justify="center")
        for s in overview.services:
            where = f"ct{s.container_id}" if s.container_id else f"vm{s.vm_id}" if s.vm_id else "host"
            services.add_row(s.name, where, _bool_mark(s.active), _bool_mark(s.enabled))
        console.print(services)

        binaries = Table(title="Binaries", title_style="bold #fabd2f", header_style="bold #E57000")
        binaries.add_column("Binary")
        binaries.add_column("Path")
        binaries.add_column("Version", overflow="fold")
        for b in overview.binaries:
            binaries.add_row(
                b.name,
                b.path if b.exists else f"[red]{b.path}[/]",
                escape(b.version or ""),
            )
        console.print(binaries)

        configs = Table(title="Config files", title_style="bold #fabd2f", header_style="bold #E57000")
        configs.add_column("Path")
        configs.add_column("Where")
        configs.add_column("Exists", justify="center")
        configs.add_column("Readable", justify="center")
        configs.add_column("Writable", justify="center")
        configs.add_column("Size", justify="right")
        configs.add_column("Modified")
        for c in overview.configs:
            where = f"ct{c.container_id}" if c.container_id else f"vm{c.vm_id}" if c.vm_id else "host"
            configs.add_row(
                c.path, where, _bool_mark(c.exists), _bool_mark(c.readable),
                _bool_mark(c.writable), str(c.size_bytes), c.modified,
            )
        console.print(configs)

    def cmd_host(self, args: List[str]):
        with console.status("[#E57000]Reading host information…[/]", spinner="dots"):
            info = self.engine.get_proxmox_host_info()
        table = Table(show_header=False, box=None, padding=(0, 2))
        table.add_column("Label", style="bold #E57000", no_wrap=True)
        table.add_column("Value", style="#ebdbb2")
        for field in HostIndexer.get_fields(info):
            table.add_row(field["label"], field["value"])
        console.print(Panel(table, title=info.hostname, border_style="#E57000"))

    def cmd_cluster(self, args: List[str]):
        console.print(self.engine.get_cluster_status())

    def cmd_details(self, args: List[str]):
        container_id = self._workload_id(args)
        details = self.engine.get_container_details(container_id)
        console.print(f"[bold #E57000]{container_id}[/] {details.os_info}")
        for unit in details.systemd_services:
            console.print(f"  • {unit}")

    def cmd_configs(self, args: List[str]):
        container_id = self._workload_id(args)
        configs = self.engine.get_container_configs(container_id)
        if not configs:
            console.print(f"No known config files for container {container_id}", style="dim")
        for c in configs:
            state = "readable" if c.readable else "missing" if not c.exists else "unreadable"
            console.print(f"  {c.path}  [dim]{state}, {c.size_bytes} bytes, {c.modified}[/]")

    def cmd_control(self, args: List[str], action: ControlAction):
        workload_id = self._workload_id(args)
        entry = self.engine.catalog.lookup(workload_id)
        is_vm = entry.kind is WorkloadKind.VIRTUAL_MACHINE
        operation = {
            ControlAction.START: self.engine.start_vm if is_vm else self.engine.start_container,
            ControlAction.STOP: self.engine.stop_vm if is_vm else self.engine.stop_container,
            ControlAction.RESTART: self.engine.restart_vm if is_vm else self.engine.restart_container,
        }[action]
        result = operation(workload_id)
        console.print(f"✅ {result.message} [dim]({result.state.value})[/]", style="green")

    def cmd_service(self, args: List[str]):
        if len(args) < 2:
            raise ValueError("Usage: /service NAME ACTION [ID]")
        container_id, vm_id = self._optional_target(args[2:])
        message = self.engine.control_service(args[0], args[1], container_id, vm_id)
        console.print(f"✅ {message}", style="green")

    def _optional_target(self, args: List[str]):
        """(container_id, vm_id) for an optional trailing workload id."""
        if not args:
            return None, None
        workload_id = self._workload_id(args)
        if self.engine.catalog.lookup(workload_id).kind is WorkloadKind.VIRTUAL_MACHINE:
            return None, workload_id
        return workload_id, None

    def cmd_status(self, args: List[str]):
        workload_id = self._workload_id(args)
        if self.engine.catalog.lookup(workload_id).kind is WorkloadKind.VIRTUAL_MACHINE:
            workload = self.engine.get_vm_status(workload_id)
        else:
            workload = self.engine.get_container_status(workload_id)
        console.print(self._workload_table(workload.name, [workload]))

    def cmd_check_service(self, args: List[str]):
        if not args:
            raise ValueError("Usage: /check-service NAME [ID]")
        container_id, vm_id = self._optional_target(args[1:])
        s = self.engine.check_service_status(args[0], container_id, vm_id)
        console.print(f"{escape(s.name)}  active {_bool_mark(s.active)}  enabled {_bool_mark(s.enabled)}")

    def cmd_check_binary(self, args: List[str]):
        if not args:
            raise ValueError("Usage: /check-binary NAME [ID]")
        container_id, vm_id = self._optional_target(args[1:])
        b = self.engine.check_binary(args[0], container_id, vm_id)
        if not b.exists:
            console.print(f"{escape(b.name)}: [red]not found[/]")
            return
        console.print(f"{escape(b.name)}: {escape(b.path)}  [dim]{escape(b.version or '')}[/]")

    def cmd_check_config(self, args: List[str]):
        if not args:
            raise ValueError("Usage: /check-config PATH [ID]")
        container_id, vm_id = self._optional_target(args[1:])
        c = self.engine.check_config(args[0], container_id, vm_id)
        console.print(
            f"{escape(c.path)}  exists {_bool_mark(c.exists)}  readable {_bool_mark(c.readable)}  "
            f"writable {_bool_mark(c.writable)}  [dim]{c.size_bytes} bytes, {c.modified}[/]"
        )

    def cmd_install(self, args: List[str]):
        with console.status("[#E57000]Installing missing binaries…[/]", spinner="dots"):
            result = self.engine.check_and_install_binaries()
        console.print(f"{'✅' if result.success else '❌'} {result.message}")
        for name in result.failed:
            console.print(f"  [red]failed: {name}[/]")

    def cmd_fix(self, args: List[str]):
        with console.status("[#E57000]Restarting inactive services…[/]", spinner="dots"):
            result = self.engine.fix_all_services()
        console.print(f"{'✅' if result.success else '❌'} {result.message}")
        for action in result.actions_taken:
            console.print(f"  • {action}")

    def cmd_script(self, args: List[str]):
        if not args or args[0] not in _SCRIPT_COMMANDS:
            raise ValueError(f"Usage: /script {{{'|'.join(_SCRIPT_COMMANDS)}}}")
        with console.status(f"[#E57000]Running {args[0]}…[/]", spinner="dots"):
            result = getattr(self.engine, _SCRIPT_COMMANDS[args[0]])()
        self._print_script_result(result)

    def _id_and_path(self, args: List[str], usage: str):
        if len(args) < 2:
            raise ValueError(usage)
        return self._workload_id(args), args[1]

    def cmd_cat(self, args: List[str]):
        workload_id, path = self._id_and_path(args, "Usage: /cat ID PATH")
        if self.engine.catalog.lookup(workload_id).kind is WorkloadKind.VIRTUAL_MACHINE:
            content = self.engine.read_vm_config(workload_id, path)
        else:
            content = self.engine.read_container_config(workload_id, path)
        lexer = Syntax.guess_lexer(path, code=content)
        console.print(Syntax(content, lexer, line_numbers=True, word_wrap=True))

    def cmd_suggest(self, args: List[str]):
        container_id, path = self._id_and_path(args, "Usage: /suggest ID PATH")
        content = self.engine.read_container_config(container_id, path)
        with console.status("[#E57000]Asking the advisor…[/]", spinner="dots"):
            suggestions = self.engine.get_ai_config_suggestions(container_id, path, content)
        if not suggestions:
            console.print("No suggestions.", style="dim")
        for s in suggestions:
            where = f" (line {s.line})" if s.line else ""
            console.print(f"[bold]{s.severity.value.upper()}[/] {escape(s.title)}{where}")
            console.print(f"  {escape(s.description)}")
            if s.replacement:
                console.print(f"  [green]→ {escape(s.replacement)}[/]")

    def cmd_host_procedure(self, operation: str):
        prompts = {
            "update": ("update_proxmox_packages", "Upgrade all packages on the Proxmox host?"),
            "reboot": ("reboot_proxmox_host", "Reboot the Proxmox host? Every workload will go down."),
            "shutdown": ("shutdown_proxmox_host", "Shut the Proxmox host down? Every workload will go down."),
        }
        method, question = prompts[operation]
        if not self.confirm(question):
            console.print("Cancelled.", style="dim")
            return
        with console.status(f"[#E57000]Running host {operation}…[/]", spinner="dots"):
            result = getattr(self.engine, method)()
        self._print_script_result(result)

    def confirm(self, question: str) -> bool:
        if self.session is None:
            return False
        answer = self.session.prompt(f"{question} [y/N] ")
        return answer.strip().lower() in ("y", "yes")

    @staticmethod
    def _workload_id(args: List[str]) -> int:
        if not args:
            raise ValueError("A workload id is required")
        try:
            return int(args[0])
        except ValueError:
            raise ValueError(f"Not a workload id: {args[0]}")

    # ── Dispatch ──────────────────────────────────────────────────────────────

    def handle_command(self, user_input: str) -> bool:
        """Handle one slash command. Returns True if the app should exit."""
        try:
            parts = shlex.split(user_input)
        except ValueError as e:
            console.print(f"❌ {escape(str(e))}", style="bold red")
            return False
        command, args = parts[0].lower(), parts[1:]

        if command in ["/exit", "/quit"]:
            console.print("\n👋 Goodbye!", style="#E57000")
            return True
        elif command == "/clear":
            console.clear()
            self.print_welcome()
            return False
        elif command == "/help":
            console.print(Panel(self._build_help_table(), title="Commands", border_style="#E57000"))
            return False

        handler = self.commands.get(command)
        if handler is None:
            console.print(f"Unknown command {command}. Type /help for the list.", style="yellow")
            return False
        try:
            handler(args)
        except ManagerError as e:
            console.print(f"❌ {escape(e.message)}", style="bold red")
            logger.debug(f"{command} failed: {e.to_dict()}")
        except ValueError as e:
            console.print(f"❌ {escape(str(e))}", style="bold red")
        return False

    def run(self):
        """Main interactive loop"""
        self.setup_prompt_session()
        console.clear()
        self.print_welcome()

        try:
            while True:
                try:
                    user_input = self.session.prompt(self._prompt_message)

                    if not user_input.strip():
                        continue

                    if not user_input.startswith("/"):
                        console.print("Commands start with /. Type /help for the list.", style="yellow")
                        continue

                    if self.handle_command(user_input):
                        break
                    console.print()

                except KeyboardInterrupt:
                    console.print("\n💡 Use /exit or Ctrl+D to quit", style="yellow")
                    continue
                except EOFError:
                    console.print("\n👋 Goodbye!", style="#E57000")
                    break

        except Exception as e:
            console.print(f"\n❌ Fatal error: {e}", style="bold red")
            sys.exit(1)


def setup_logging(debug: bool = False):
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=debug)],
    )


def main(argv: Optional[List[str]] = None):
    """Entry point"""
    parser = argparse.ArgumentParser(
        description="Inspect and maintain a Proxmox host and its workloads",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  proxmox-manager                               # Interactive shell
  proxmox-manager --ssh-host root@pve           # Use a different host
  proxmox-manager --command "/overview"         # Run one command and exit
        """,
    )
    parser.add_argument("--ssh-host", default=None, help="SSH destination of the Proxmox host")
    parser.add_argument("--command", "-c", default=None, help="Run one slash command and exit")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")

    args = parser.parse_args(argv)
    setup_logging(args.debug)

    try:
        settings = Settings.from_env()
    except ValueError as e:
        console.print(f"\n❌ Invalid configuration: {e}", style="bold red")
        sys.exit(1)
    if args.ssh_host:
        settings.ssh_host = args.ssh_host

    engine = ControlEngine(settings=settings)
    shell = ProxmoxShell(engine, debug=args.debug)
    try:
        if args.command:
            shell.handle_command(args.command)
        else:
            shell.run()
    finally:
        engine.close()


if __name__ == "__main__":
    main()
