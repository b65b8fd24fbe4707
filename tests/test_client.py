import tempfile
import unittest
from pathlib import Path

import httpx

from agentskills.client import USER_AGENT, AgentSkillsError, AgentSkillsHTTPError, HttpClient


class TestRedirectAuth(unittest.IsolatedAsyncioTestCase):
    async def test_authorization_is_not_forwarded_cross_origin(self) -> None:
        seen: list[tuple[str, str | None]] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append((request.url.host, request.headers.get("authorization")))
            if request.url.host == "api.github.com":
                return httpx.Response(302, headers={"location": "https://codeload.github.com/acme/skills/tar.gz/abc"})
            return httpx.Response(200, content=b"tarball")

        async with HttpClient(host_tokens={"api.github.com": "ghp_123"}, transport=httpx.MockTransport(handler)) as http:
            with tempfile.TemporaryDirectory() as td:
                size = await http.download("https://api.github.com/repos/acme/skills/tarball/abc", Path(td) / "a.tgz")
                content = (Path(td) / "a.tgz").read_bytes()

        self.assertEqual(size, 7)
        self.assertEqual(content, b"tarball")
        self.assertEqual(seen[0], ("api.github.com", "Bearer ghp_123"))
        self.assertEqual(seen[1], ("codeload.github.com", None))

    async def test_user_agent(self) -> None:
        seen: list[str | None] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request.headers.get("user-agent"))
            return httpx.Response(200, json={})

        async with HttpClient(transport=httpx.MockTransport(handler)) as http:
            await http.get_json("https://registry.example.test/pdf")

        self.assertEqual(seen, [USER_AGENT])


class TestErrors(unittest.IsolatedAsyncioTestCase):
    async def test_http_error_status(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(404, text="Not Found")

        async with HttpClient(transport=httpx.MockTransport(handler)) as http:
            with self.assertRaises(AgentSkillsHTTPError) as ctx:
                await http.get_json("https://registry.example.test/missing")

        self.assertEqual(ctx.exception.status_code, 404)
        self.assertEqual(ctx.exception.code, "FETCH_FAILED")
        self.assertEqual(str(ctx.exception), "HTTP 404 for https://registry.example.test/missing: Not Found")

    async def test_download_error_status(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(403, text="rate limited")

        async with HttpClient(transport=httpx.MockTransport(handler)) as http:
            with tempfile.TemporaryDirectory() as td:
                with self.assertRaises(AgentSkillsHTTPError) as ctx:
                    await http.download("https://example.test/a.tgz", Path(td) / "a.tgz")

        self.assertEqual(ctx.exception.status_code, 403)
        self.assertIn("rate limited", ctx.exception.body)

    async def test_timeout(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("slow", request=request)

        async with HttpClient(timeout_s=1.0, transport=httpx.MockTransport(handler)) as http:
            with self.assertRaises(AgentSkillsError) as ctx:
                await http.get_text("https://example.test/slow")

        self.assertIn("timed out", str(ctx.exception))

    async def test_non_json_body(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, text="<html>")

        async with HttpClient(transport=httpx.MockTransport(handler)) as http:
            with self.assertRaises(AgentSkillsError):
                await http.get_json("https://registry.example.test/pdf")


if __name__ == "__main__":
    unittest.main()
