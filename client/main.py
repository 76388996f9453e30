"""
Main entry point for the chat client.
Ask for a username, connect, make sure the account keys exist, then open the console UI.
"""
import argparse
import asyncio
import logging

from common.config import load_settings
from common.errors import DuplicateUsernameError, KeyGenerationError
from client.app import ChatClient
from client.ui import ConsoleNotifier, ConsoleUI


async def run(settings, username: str, full_name: str) -> int:
    notifier = ConsoleNotifier()
    while True:
        client = ChatClient(settings, username, full_name, notifier=notifier)
        try:
            await client.start()
            break
        except DuplicateUsernameError:
            username = (await asyncio.to_thread(input, "Username already exists. Please try another one: ")).strip()
            if not username:
                print("Login cancelled. Exiting program.")
                return 1
        except KeyGenerationError as e:
            # an account cannot be used without keys
            print(f"Could not create encryption keys: {e}")
            await client.net.close()
            return 1
        except (ConnectionError, OSError) as e:
            print(f"Could not connect to {settings.host}:{settings.port}: {e}")
            return 1

    print(f"Connected as user: {client.account.id}")
    ui = ConsoleUI(client)
    try:
        await ui.run()
    except (EOFError, KeyboardInterrupt):
        pass
    finally:
        await client.stop()
    return 0


def main():
    ap = argparse.ArgumentParser(description="End-to-end encrypted chat client")
    settings = load_settings()
    ap.add_argument("--host", default=settings.host, help="Server host address")
    ap.add_argument("--port", type=int, default=settings.port, help="Server port")
    ap.add_argument("--user", help="Username (asked for if missing)")
    ap.add_argument("--name", default="", help="Display name")
    args = ap.parse_args()
    settings.host, settings.port = args.host, args.port

    logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    username = args.user or input("Username: ").strip()
    if not username:
        print("Login cancelled. Exiting program.")
        return
    raise SystemExit(asyncio.run(run(settings, username, args.name)))


if __name__ == "__main__":
    main()
