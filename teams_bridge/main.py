import asyncio
import logging
import sys

import httpx

from .config import Config, load_config
from .database.repository import Credentials, Repository
from .home import MemoryHome
from .session import Session
from .teams.auth import AuthClient
from .teams.errors import AuthRequiredError, TeamsError
from .ui.menu import MenuUI, console


logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)


def build_session(
    account_id: str,
    credentials: Credentials,
    repo: Repository,
    home: MemoryHome,
    http: httpx.AsyncClient,
    config: Config,
) -> Session:
    auth = AuthClient(http, config.client_id)
    return Session(account_id, credentials, repo, home, home, auth, http, config=config)


async def add_account(repo: Repository, http: httpx.AsyncClient, config: Config) -> None:
    accounts = await repo.list_accounts()
    label = (await MenuUI.ask_account_label(accounts)).strip()
    refresh_token = (await MenuUI.ask_refresh_token()).strip()

    credentials = Credentials(refresh_token=refresh_token)
    await repo.save_credentials(label, credentials)

    session = build_session(label, credentials, repo, MemoryHome(), http, config)
    console.print("[dim]Checking credentials...[/dim]")
    try:
        await session.tokens.ensure_session_token()
    except AuthRequiredError as e:
        await repo.delete_account(label)
        MenuUI.show_error(f"Login rejected: {e}")
        return
    except TeamsError as e:
        MenuUI.show_error(f"Could not verify the login right now ({e}); it was saved and will be retried.")
        return

    MenuUI.show_success(f"Logged in as {session.tokens.self_id or label}")


async def relogin_account(repo: Repository, http: httpx.AsyncClient, config: Config) -> None:
    account = await MenuUI.select_account(await repo.list_accounts())
    if not account:
        return
    credentials = await repo.get_credentials(account) or Credentials()
    session = build_session(account, credentials, repo, MemoryHome(), http, config)
    refresh_token = await MenuUI.ask_refresh_token()
    if await session.relogin(refresh_token):
        await session.stop()
        MenuUI.show_success(f"{account} is logged in again")
    else:
        MenuUI.show_error(f"{account} was rejected, check the refresh token")


async def remove_account(repo: Repository) -> None:
    account = await MenuUI.select_account(await repo.list_accounts())
    if not account:
        return
    if await MenuUI.confirm(f"Remove {account} and its stored credentials?"):
        await repo.delete_account(account)
        MenuUI.show_success(f"Removed {account}")


async def show_threads(repo: Repository) -> None:
    account = await MenuUI.select_account(await repo.list_accounts())
    if account:
        MenuUI.show_threads(await repo.list_threads(account))


async def run_bridge(repo: Repository, http: httpx.AsyncClient, config: Config) -> None:
    home = MemoryHome(on_event=MenuUI.show_event, history=0)
    sessions: list[Session] = []

    for account in await repo.list_accounts():
        credentials = await repo.get_credentials(account)
        if credentials is None:
            continue
        session = build_session(account, credentials, repo, home, http, config)
        sessions.append(session)
        if await session.connect():
            MenuUI.show_success(f"{account} connected")

    if not any(session.running for session in sessions):
        MenuUI.show_error("No session could be started. Re-login the affected accounts.")
        return

    console.print("\n[bold green]🟢 Bridge running[/bold green]")
    console.print("[dim]Press Ctrl+C to exit[/dim]\n")

    try:
        await asyncio.Event().wait()
    finally:
        console.print("\n[yellow]Stopping sessions...[/yellow]")
        await asyncio.gather(*(session.stop(config.stop_grace) for session in sessions))


async def async_main():
    try:
        config = load_config()
    except ValueError as e:
        MenuUI.show_error(str(e))
        console.print("\nPlease check the values in your .env file.")
        return 1

    logging.getLogger().setLevel(config.log_level)

    repo = Repository(config.db_path)
    await repo.connect()

    try:
        async with httpx.AsyncClient(timeout=60.0) as http:
            while True:
                accounts = await repo.list_accounts()
                action = await MenuUI.select_action(bool(accounts))

                if action == "quit":
                    break
                elif action == "add":
                    await add_account(repo, http, config)
                elif action == "relogin":
                    await relogin_account(repo, http, config)
                elif action == "remove":
                    await remove_account(repo)
                elif action == "threads":
                    await show_threads(repo)
                elif action == "run":
                    await run_bridge(repo, http, config)
    finally:
        await repo.close()

    return 0


def main():
    try:
        MenuUI.show_welcome()

        exit_code = asyncio.run(async_main())
        sys.exit(exit_code)
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted.[/yellow]")
        sys.exit(0)


if __name__ == "__main__":
    main()
