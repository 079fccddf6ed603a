"""
Interactive chat example for the ChatBridge MCP framework.

Streams Gemini replies to the terminal and lets the model call the tools
of the fun facts server. Type /quit to leave, /tools to toggle tool use.
"""

import os

import anyio
from rich.console import Console

from chatbridge_mcp import ChatBridgeApp
from chatbridge_mcp.chat import TextEvent, ToolCallEvent, ErrorEvent

console = Console()


async def main():
    """Run the chat loop."""
    # The server command in the config is relative to this directory
    os.chdir(os.path.dirname(os.path.abspath(__file__)))

    app = ChatBridgeApp(name="chat_cli", config_path="chatbridge_mcp.config.yaml")
    async with app.run() as running_app:
        connected = sorted(running_app.connection_manager.list_connected_ids())
        console.print(f"[bold]Connected servers:[/bold] {', '.join(connected) or 'none'}")

        history = []
        use_tools = True
        while True:
            user_input = await anyio.to_thread.run_sync(console.input, "[bold green]> [/bold green]")
            if user_input.strip() == "/quit":
                break
            if user_input.strip() == "/tools":
                use_tools = not use_tools
                console.print(f"Tool use {'enabled' if use_tools else 'disabled'}")
                continue

            history.append({"role": "user", "content": user_input})
            printed = ""
            async with running_app.orchestrator.run_turn(history, use_tools=use_tools) as turn:
                async for event in turn.events():
                    if isinstance(event, ToolCallEvent):
                        console.print(f"\n[dim]-> {event.name}({event.args})[/dim]")
                    elif isinstance(event, TextEvent):
                        # Text events carry the whole message so far
                        if event.content.startswith(printed):
                            console.print(event.content[len(printed):], end="", markup=False)
                        else:
                            console.print("\n" + event.content, end="", markup=False)
                        printed = event.content
                    elif isinstance(event, ErrorEvent):
                        console.print(f"\n[red]{event.code.value}: {event.message}[/red]")
            console.print()

            if turn.error is not None:
                history = [message.model_dump(mode="json") for message in turn.retry_messages]
            else:
                history.append({"role": "model", "content": turn.model_message.content})


if __name__ == "__main__":
    anyio.run(main)
