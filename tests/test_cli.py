import io

import httpx
import pytest

import cli
from utils.sse import DONE_FRAME, format_sse


def run(handler, argv):
    args = cli.build_parser().parse_args(argv)
    with httpx.Client(base_url="http://test", headers=cli._headers(args), transport=httpx.MockTransport(handler)) as client:
        args.func(client, args)


def test_print_tree():
    out = io.StringIO()
    cli.print_tree([{"name": "src", "type": "dir", "children": [{"name": "app.py", "type": "file"}]}], out=out)
    assert out.getvalue() == "src/\n  app.py\n"


def test_split_repo_rejects_bad_slug():
    with pytest.raises(SystemExit):
        cli._split_repo("only-owner")


def test_cat_prints_file(capsys):
    def handler(request):
        assert request.url.path == "/repos/gitlab/o/r/file"
        assert request.url.params["path"] == "README.md"
        return httpx.Response(200, json={"path": "README.md", "branch": None, "content": "# Demo\n"})

    run(handler, ["--provider", "gitlab", "cat", "o/r", "README.md"])
    assert capsys.readouterr().out == "# Demo\n"


def test_chat_streams_answer(capsys):
    seen = []

    def handler(request):
        seen.append(request)
        body = format_sse("Hello") + format_sse(" world") + DONE_FRAME
        return httpx.Response(200, content=body.encode(), headers={"content-type": "text/event-stream"})

    run(handler, ["--email", "dev@example.com", "chat", "o/r", "What is it?", "-f", "src/app.py"])
    assert capsys.readouterr().out == "Hello world\n"
    assert seen[0].headers["X-User-Email"] == "dev@example.com"
    assert b'"taggedFiles":{"src/app.py":""}' in seen[0].content.replace(b" ", b"")


def test_error_responses_exit(capsys):
    def handler(request):
        return httpx.Response(404, json={"status": "error", "message": "Repository o/r not found or is private."})

    with pytest.raises(SystemExit) as exc:
        run(handler, ["tree", "o/r"])
    assert "Repository o/r not found" in str(exc.value)
