"""Entry point for SimpleReader: python -m simplereader"""

import asyncio
import logging
import os
import uuid

import httpx
from langchain_core.messages import HumanMessage

from simplereader.agent import create_agent
from simplereader.database import Database
from simplereader.feed_parser import DEFAULT_TIMEOUT
from simplereader.models import Settings
from simplereader.poller import Refresher, default_refresh_interval, start_polling
from simplereader.tools import set_refresher

DEFAULT_DB_PATH = "simplereader.db"
CHECKPOINT_DB_PATH = "simplereader_checkpoints.db"

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(name)s] %(message)s",
    datefmt="%H:%M:%S",
)
# Quiet noisy loggers
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("langchain").setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


async def chat_loop(agent, config: dict, status: dict | None = None) -> None:
    """Read user turns and print the agent's replies until EOF."""
    banner = "SimpleReader ready!"
    if status and status.get("badge"):
        banner += f" {status['badge']} unread."
    print(f"{banner} Type your message (Ctrl+C to quit).\n")

    while True:
        user_input = await _read_line()
        if user_input is None:
            break
        if user_input:
            print(f"\nAgent: {await answer(agent, user_input, config)}\n")


async def _read_line() -> str | None:
    try:
        return (await asyncio.to_thread(input, "You: ")).strip()
    except EOFError:
        return None


async def answer(agent, text: str, config: dict) -> str:
    """Run one agent turn and return the text to show the user."""
    try:
        response = await asyncio.to_thread(
            agent.invoke, {"messages": [HumanMessage(content=text)]}, config
        )
    except Exception as e:
        error_msg = str(e)
        if "tool_use" in error_msg and "tool_result" in error_msg:
            # Checkpoint holds an unanswered tool call; move to a new thread
            config["configurable"]["thread_id"] = uuid.uuid4().hex
            return "Sorry, I had an issue with my memory. Let me start fresh. Please try again."
        logger.exception("Agent turn failed")
        return f"Sorry, I encountered an error: {error_msg}"
    return response["messages"][-1].content


async def main() -> None:
    """Initialize and run SimpleReader."""
    db_path = os.environ.get("RSS_DB_PATH", DEFAULT_DB_PATH)
    checkpoint_path = os.environ.get("RSS_CHECKPOINT_PATH", CHECKPOINT_DB_PATH)
    fetch_timeout = float(os.environ.get("RSS_FETCH_TIMEOUT", DEFAULT_TIMEOUT))

    db = Database(
        db_path,
        default_settings=Settings(refresh_interval_minutes=default_refresh_interval()),
    )
    db.connect()

    async with httpx.AsyncClient() as client:
        refresher = Refresher(db, client=client, fetch_timeout=fetch_timeout)
        set_refresher(refresher, asyncio.get_running_loop())

        agent = create_agent(checkpoint_db_path=checkpoint_path)

        # Each session gets a fresh thread to avoid corrupted checkpoint issues
        config = {"configurable": {"thread_id": uuid.uuid4().hex}}

        poller_task = asyncio.create_task(start_polling(refresher))

        try:
            await chat_loop(agent, config, refresher.status())
        except KeyboardInterrupt:
            print("\nGoodbye!")
        finally:
            poller_task.cancel()
            try:
                await poller_task
            except asyncio.CancelledError:
                pass
            db.close()


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
