#!/usr/bin/env python3
"""
Example client for the RepoBrief question answering API.
Shows how to read the file references header and consume the streamed answer.
"""

import argparse
import asyncio
import json
import sys
from typing import AsyncGenerator, List
from urllib.parse import unquote

import aiohttp


class QAStreamingClient:
    """Client for asking questions against an indexed RepoBrief project."""

    def __init__(self, base_url: str = "http://localhost:8001"):
        self.base_url = base_url.rstrip('/')
        self.file_references: List[dict] = []

    async def ask(self, project_id: str, question: str) -> AsyncGenerator[str, None]:
        """Stream the answer text; ``file_references`` is filled before the first chunk."""
        url = f"{self.base_url}/qa"
        payload = {"question": question, "projectId": project_id}

        async with aiohttp.ClientSession() as session:
            async with session.post(url, json=payload) as response:
                if response.status != 200:
                    body = await response.json(content_type=None)
                    raise Exception(f"Request failed with status {response.status}: {body.get('error')}")

                header = response.headers.get("X-File-References", "[]")
                self.file_references = json.loads(unquote(header))

                async for chunk in response.content.iter_any():
                    yield chunk.decode('utf-8', errors='replace')


async def main():
    parser = argparse.ArgumentParser(description="Ask a question about an indexed repository")
    parser.add_argument("project_id")
    parser.add_argument("question")
    parser.add_argument("--base-url", default="http://localhost:8001")
    args = parser.parse_args()

    print("\n⚠️  Make sure RepoBrief is running on", args.base_url)
    print("   Start with: python -m uvicorn server.rag_api:app --host 0.0.0.0 --port 8001 --reload\n")

    client = QAStreamingClient(args.base_url)
    first = True
    async for chunk in client.ask(args.project_id, args.question):
        if first:
            print("📄 Referenced files:")
            for ref in client.file_references:
                print(f"  {ref['fileName']} (similarity {ref['similarity']:.3f})")
            print()
            first = False
        print(chunk, end="", flush=True)
    print()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\n👋 Interrupted by user")
    except Exception as e:
        print(f"\n❌ Request failed: {e}")
        sys.exit(1)
