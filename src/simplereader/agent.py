"""LangGraph agent definition for SimpleReader."""

import logging
import os
import sqlite3
from typing import Literal

from langchain_anthropic import ChatAnthropic
from langchain_core.messages import SystemMessage, ToolMessage
from langgraph.checkpoint.sqlite import SqliteSaver
from langgraph.graph import END, START, MessagesState, StateGraph

from simplereader.tools import (
    export_opml,
    get_items,
    get_status,
    import_opml,
    list_feeds,
    mark_as_read,
    mark_as_unread,
    refresh_feeds,
    subscribe_to_feed,
    unsubscribe_from_feed,
)

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """You are SimpleReader, a helpful assistant that manages RSS, Atom and RSS 1.0 feed subscriptions.

You help users:
- Subscribe to feeds by URL and unsubscribe from them
- Refresh their feeds on demand
- View the latest cached articles and their unread count
- Mark articles as read or unread
- Import subscriptions from OPML and export them to OPML

When a user wants to subscribe to a feed, use the subscribe_to_feed tool with the URL they provide.
When a user asks to check for new articles right now, use the refresh_feeds tool.
When a user asks to see articles, news, or what's new, use the get_items tool. You can filter by feed or by unread only.
When a user asks to see their feeds or subscriptions, use the list_feeds tool.
When a user wants to unsubscribe or remove a feed, use the unsubscribe_from_feed tool with the feed title, URL or id.
When a user wants to mark articles as read or unread, use mark_as_read or mark_as_unread with the feed and the article ids.
When a user asks how many articles are unread or when feeds were last refreshed, use the get_status tool.
When a user pastes an OPML document, use import_opml. When they ask for an export, use export_opml.
Feeds are refreshed automatically in the background; you do not need to refresh before listing articles.
When the user's intent is unclear, ask a clarifying question rather than guessing.
Present articles in a readable format: title, link, date, and a brief excerpt.
Be concise but informative in your responses."""

# All tools available to the agent
TOOLS = [
    subscribe_to_feed,
    unsubscribe_from_feed,
    refresh_feeds,
    list_feeds,
    get_items,
    mark_as_read,
    mark_as_unread,
    get_status,
    import_opml,
    export_opml,
]

DEFAULT_MODEL = "claude-sonnet-4-5-20250929"


def _run_tool_calls(tools_by_name: dict, message) -> list[ToolMessage]:
    """Invoke each requested tool, turning failures into error results."""
    replies = []
    for call in message.tool_calls:
        selected = tools_by_name.get(call["name"])
        if selected is None:
            content, status = f"Unknown tool: {call['name']}", "error"
        else:
            try:
                content, status = str(selected.invoke(call["args"])), "success"
            except Exception as e:
                logger.exception("Tool %s failed", call["name"])
                content, status = f"Tool error: {e}", "error"
        replies.append(ToolMessage(content=content, tool_call_id=call["id"], status=status))
    return replies


def create_agent(
    checkpoint_db_path: str = "simplereader_checkpoints.db",
    tools: list | None = None,
    model_name: str | None = None,
):
    """Build the reader's chat graph: the model answers or asks for tools,
    tool results go back to the model, and the conversation is checkpointed
    to SQLite.

    ``model_name`` defaults to ``RSS_AGENT_MODEL`` from the environment.
    """
    tools = TOOLS if tools is None else tools
    llm = ChatAnthropic(
        model=model_name or os.environ.get("RSS_AGENT_MODEL", DEFAULT_MODEL),
        temperature=0,
    )
    if tools:
        llm = llm.bind_tools(tools)
    tools_by_name = {t.name: t for t in tools}

    def assistant(state: MessagesState):
        prompt = [SystemMessage(content=SYSTEM_PROMPT), *state["messages"]]
        return {"messages": [llm.invoke(prompt)]}

    def run_tools(state: MessagesState):
        return {"messages": _run_tool_calls(tools_by_name, state["messages"][-1])}

    def route(state: MessagesState) -> Literal["run_tools", "__end__"]:
        return "run_tools" if state["messages"][-1].tool_calls else END

    graph = StateGraph(MessagesState)
    graph.add_node("assistant", assistant)
    graph.add_node("run_tools", run_tools)
    graph.add_edge(START, "assistant")
    graph.add_conditional_edges("assistant", route, ["run_tools", END])
    graph.add_edge("run_tools", "assistant")

    saver = SqliteSaver(sqlite3.connect(checkpoint_db_path, check_same_thread=False))
    return graph.compile(checkpointer=saver)
