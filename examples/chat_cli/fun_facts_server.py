"""
Fun facts MCP server for the chat CLI example.

Run it over stdio; the example config starts it automatically.
"""

import random
import sys

from mcp.server.fastmcp import FastMCP

app = FastMCP("fun-facts-server")

FACTS = {
    "san francisco": [
        "The Golden Gate Bridge is painted 'International Orange', not gold.",
        "San Francisco's cable cars are a moving National Historic Landmark.",
    ],
    "tokyo": [
        "Tokyo was known as Edo until 1868.",
        "Shibuya Crossing is one of the busiest pedestrian crossings in the world.",
    ],
    "python": [
        "Python is named after Monty Python, not the snake.",
        "Python was created by Guido van Rossum in the late 1980s.",
    ],
    "coffee": [
        "Coffee beans are the pits of a cherry-like berry.",
    ],
}


@app.tool()
async def get_fun_fact(topic: str) -> str:
    """
    Get a fun fact about a specific topic.

    Args:
        topic: The topic to get a fun fact about.
    """
    print(f"Received fun fact request for: {topic}", file=sys.stderr)

    topic_lower = topic.lower()
    for key, facts in FACTS.items():
        if key in topic_lower or topic_lower in key:
            return random.choice(facts)
    return f"I don't have any fun facts about {topic}."


@app.tool()
async def list_available_topics() -> str:
    """List all topics that have fun facts available."""
    return "Available topics: " + ", ".join(topic.title() for topic in FACTS)


@app.prompt()
def fact_request(topic: str) -> str:
    """Ask the assistant for a fun fact."""
    return f"Tell me a fun fact about {topic}, using the fun facts tool."


@app.resource("facts://topics", mime_type="text/plain")
def topics() -> str:
    """Topics with fun facts."""
    return "\n".join(FACTS)


if __name__ == "__main__":
    app.run("stdio")
