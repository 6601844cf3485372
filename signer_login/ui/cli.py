from prompt_toolkit import PromptSession
from prompt_toolkit.patch_stdout import patch_stdout
from rich.console import Console
from rich.panel import Panel
from rich.text import Text
from rich.theme import Theme

from signer_login.core.authenticator import RelayAuthenticator
from signer_login.core.config import RelayConfig, SessionConfig
from signer_login.core.connection_uri import ConnectionUriBuilder
from signer_login.core.models import ProgressSnapshot
from signer_login.core.session_manager import ConnectionStateMachine
from signer_login.core.state_machine import Stage
from signer_login.network.transport import RelayTransport
from signer_login.security.rate_limiter import RateLimiter
from signer_login.utils.error_codes import ErrorKind

custom_theme = Theme({
    "info": "dim cyan",
    "warning": "magenta",
    "danger": "bold red",
    "success": "bold green",
    "current": "bold purple",
    "waiting": "bold yellow",
    "pending": "dim white",
})

console = Console(theme=custom_theme)

STEPS = (
    (Stage.CONNECTED, "Connected to signer"),
    (Stage.SIGNING, "Signing authentication"),
    (Stage.SYNCING, "Loading your data"),
)
ORDER = [Stage.CONNECTED, Stage.SIGNING, Stage.SYNCING, Stage.COMPLETE]

HELP = (
    "[info]Commands: open | link | new | paste <bunker-url> | check | retry | back | cancel | quit[/info]"
)


def step_status(snapshot: ProgressSnapshot, step: Stage) -> str:
    stage = snapshot.stage
    if stage is Stage.ERROR:
        failed = snapshot.error_stage if snapshot.error_stage in ORDER else Stage.CONNECTED
        if step is failed:
            return "error"
        return "complete" if ORDER.index(step) < ORDER.index(failed) else "pending"
    if stage is Stage.AWAITING_APPROVAL:
        return "waiting" if step is Stage.CONNECTED else "pending"
    if stage not in ORDER:
        return "pending"
    if stage is Stage.COMPLETE or ORDER.index(step) < ORDER.index(stage):
        return "complete"
    return "current" if step is stage else "pending"


def render_stepper(snapshot: ProgressSnapshot) -> Text:
    icons = {"complete": "✓", "current": "●", "waiting": "…", "pending": "○", "error": "✗"}
    styles = {"complete": "success", "current": "current", "waiting": "waiting",
              "pending": "pending", "error": "danger"}
    text = Text()
    for step, label in STEPS:
        status = step_status(snapshot, step)
        if step is Stage.CONNECTED and status == "waiting":
            label = "Waiting for approval"
        text.append(f" {icons[status]} {label}\n", style=styles[status])
    return text


class SignerLoginCLI:
    def __init__(self, relay_uri=None, passive_scanning=True, relay_config=None):
        self.transport = RelayTransport(relay_uri)
        self.uri_builder = ConnectionUriBuilder(relay_config or RelayConfig())
        self.machine = ConnectionStateMachine(
            self.transport,
            RelayAuthenticator(self.transport),
            config=SessionConfig(passive_scanning=passive_scanning),
            token_factory=self.uri_builder.new_token,
            on_progress=self.ui_callback,
            on_complete=self.on_complete,
            on_cancel=self.on_cancel,
        )
        self.session = PromptSession()
        # One manual check per 3s; the poller is already probing every few seconds.
        self.check_limiter = RateLimiter(max_calls=1, period=3.0)
        self.running = True

    def ui_callback(self, snapshot: ProgressSnapshot):
        # Called from the asyncio loop after every state change
        stage = snapshot.stage
        if snapshot.error_kind is not None and stage is not Stage.ERROR:
            # A rejected paste; the running attempt carries on.
            console.print(f"[danger]Error: {snapshot.error_message}[/danger]")
            return
        if stage is Stage.IDLE:
            if snapshot.connection_uri:
                console.print(Panel(
                    f"{snapshot.connection_uri}\n\n[dim]Scan or open this link with your signer app "
                    "(Amber, nsec.app, or any NIP-46 signer).[/dim]",
                    title="Connect with your signer", expand=False,
                ))
            console.print(HELP)
        elif stage is Stage.WAITING:
            console.print("[info]Waiting for your signer to connect...[/info]")
        elif stage is Stage.AWAITING_APPROVAL:
            approval = snapshot.approval_request
            lines = ["[waiting]Action required in signer app[/waiting]"]
            if snapshot.message:
                lines.append(snapshot.message)
            if approval is not None:
                if approval.approval_uri:
                    lines.append(f"Open approval page: {approval.approval_uri}")
                if approval.poll_attempt:
                    lines.append(f"[dim](checking... {approval.poll_attempt}/{approval.max_poll_attempts})[/dim]")
            lines.append("[dim]Type 'check' once you have approved.[/dim]")
            console.print(Panel("\n".join(lines), expand=False))
        elif stage in (Stage.CONNECTED, Stage.SIGNING, Stage.SYNCING):
            console.print(render_stepper(snapshot))
            if snapshot.slow_warning:
                console.print("[warning]Taking longer than expected? Make sure your signer app is open "
                              "and approve the request when prompted.[/warning]")
        elif stage is Stage.COMPLETE:
            console.print(render_stepper(snapshot))
        elif stage is Stage.ERROR:
            if snapshot.error_stage in ORDER:
                console.print(render_stepper(snapshot))
            console.print(f"[danger]Error: {snapshot.error_message}[/danger]")
            if snapshot.error_kind in (ErrorKind.EXPIRED_TOKEN, ErrorKind.REJECTED):
                console.print("[warning]Generate a new bunker URL in your signer app and paste it.[/warning]")
            console.print("[info]Type 'retry' or 'cancel'.[/info]")

    def on_complete(self, peer):
        console.print(Panel(
            f"[success]Successfully signed in![/success]\n[dim]{peer.short}[/dim]", expand=False,
        ))
        self.running = False

    def on_cancel(self):
        console.print("[danger]Cancelled.[/danger]")
        self.running = False

    async def handle_command(self, line: str):
        command, _, arg = line.strip().partition(" ")
        command = command.lower()
        if not command:
            return

        if command in ("quit", "exit", "/quit"):
            await self.machine.cancel()
            self.running = False
        elif command == "link":
            uri = self.machine.connection_uri
            console.print(uri if uri else "[warning]No connection link. Type 'new'.[/warning]")
        elif command == "new":
            await self.machine.start()
        elif command == "open":
            uri = await self.machine.open_in_signer()
            if uri:
                console.print(f"[info]Open this link in your signer app:[/info] {uri}")
            else:
                console.print("[warning]No connection link. Type 'new'.[/warning]")
        elif command == "paste":
            raw = arg or await self.session.prompt_async("bunker:// URL: ")
            await self.machine.submit_connection_string(raw)
        elif command == "check":
            if not self.check_limiter.check():
                console.print(f"[warning]Please wait {self.check_limiter.retry_after():.0f}s before checking again.[/warning]")
                return
            if await self.machine.check_approval_now() is None:
                console.print("[info]Nothing is waiting for approval.[/info]")
        elif command == "retry":
            await self.machine.retry()
            if self.machine.stage is Stage.IDLE and self.machine.connection_uri is None:
                await self.machine.start()
        elif command == "back":
            await self.machine.reset()
        elif command == "cancel":
            await self.machine.cancel()
        else:
            console.print(HELP)

    async def run(self):
        console.clear()
        console.print(Panel.fit("[bold white]SIGNER LOGIN[/bold white]\n[dim]Your keys stay in your signer.[/dim]", style="blue"))

        try:
            await self.machine.start()
            with patch_stdout():
                while self.running:
                    try:
                        line = await self.session.prompt_async("> ")
                    except (EOFError, KeyboardInterrupt):
                        await self.machine.cancel()
                        break
                    await self.handle_command(line)
        finally:
            await self.transport.disconnect()
            self.uri_builder.close()
