"""Test doubles for the GitHub contents API and the cache."""
import base64
import json

import httpx


class FakeGitHub:
    """Serves licenses.json through the contents API and the raw host."""

    def __init__(self, licenses=None, sha="sha-1"):
        self.content = None if licenses is None else json.dumps(licenses)
        self.sha = sha if licenses is not None else None
        self.puts = []
        self.raw_status = None
        self.put_status = None
        self.put_headers = {}
        self.commits = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.host == "raw.githubusercontent.com":
            if self.raw_status is not None:
                return httpx.Response(self.raw_status, text="")
            if self.content is None:
                return httpx.Response(404, text="404: Not Found")
            return httpx.Response(200, text=self.content)

        if request.method == "GET":
            if self.content is None:
                return httpx.Response(404, json={"message": "Not Found"})
            encoded = base64.b64encode(self.content.encode()).decode()
            return httpx.Response(200, json={"content": encoded, "sha": self.sha})

        if request.method == "PUT":
            body = json.loads(request.content)
            self.puts.append(body)
            if self.put_status is not None:
                return httpx.Response(self.put_status, json={"message": "rejected"}, headers=self.put_headers)
            if body.get("sha") != self.sha:
                return httpx.Response(409, json={"message": f"licenses.json does not match {body.get('sha')}"})
            self.commits += 1
            self.content = base64.b64decode(body["content"]).decode()
            self.sha = f"sha-{self.commits + 1}"
            return httpx.Response(
                200,
                json={
                    "content": {"sha": self.sha},
                    "commit": {"sha": f"commit-{self.commits}", "html_url": f"https://github.com/c/{self.commits}"},
                },
            )

        return httpx.Response(405)


class MemoryCache:
    name = "memory"

    def __init__(self, value=None):
        self.values = {} if value is None else {"licenses": value}

    async def get(self, key):
        return self.values.get(key)

    async def set(self, key, value):
        self.values[key] = value

