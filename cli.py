# /cli.py
# Command-line client for a running ExplainGithub server: print a repository tree, show a file,
# or ask a question and stream the answer to the terminal.
import argparse
import os
import sys
import uuid

import httpx

from utils.sse import SSEReader


def _headers(args) -> dict:
    headers = {}
    if args.email:
        headers["X-User-Email"] = args.email
    else:
        headers["X-Anonymous-Id"] = args.anonymous_id
    return headers


def _split_repo(slug: str):
    parts = slug.strip("/").split("/")
    if len(parts) < 2 or not parts[0] or not parts[1]:
        raise SystemExit(f"Error: expected owner/repo, got {slug!r}")
    return parts[0], parts[1]


def _fail(resp: httpx.Response) -> None:
    try:
        message = resp.json().get("message", resp.text)
    except ValueError:
        message = resp.text
    raise SystemExit(f"Error ({resp.status_code}): {message}")


def print_tree(nodes, depth=0, out=sys.stdout) -> None:
    for node in nodes:
        suffix = "/" if node.get("type") == "dir" else ""
        out.write(f"{'  ' * depth}{node['name']}{suffix}\n")
        print_tree(node.get("children") or [], depth + 1, out)


def cmd_tree(client: httpx.Client, args) -> None:
    owner, repo = _split_repo(args.repo)
    resp = client.get(f"/repos/{args.provider}/{owner}/{repo}/tree")
    if resp.status_code != 200:
        _fail(resp)
    print_tree(resp.json())


def cmd_cat(client: httpx.Client, args) -> None:
    owner, repo = _split_repo(args.repo)
    params = {"path": args.path}
    if args.branch:
        params["branch"] = args.branch
    resp = client.get(f"/repos/{args.provider}/{owner}/{repo}/file", params=params)
    if resp.status_code != 200:
        _fail(resp)
    sys.stdout.write(resp.json()["content"])


def cmd_chat(client: httpx.Client, args) -> None:
    owner, repo = _split_repo(args.repo)
    body = {
        "message": args.question,
        "owner": owner,
        "repo": repo,
        "provider": args.provider,
        "taggedFiles": {path: "" for path in args.file or []},
    }
    reader = SSEReader()
    with client.stream("POST", "/chat", json=body, timeout=None) as resp:
        if resp.status_code != 200:
            resp.read()
            _fail(resp)
        for chunk in resp.iter_text():
            for piece in reader.feed(chunk):
                sys.stdout.write(piece)
                sys.stdout.flush()
            if reader.done:
                break
    for piece in reader.flush():
        sys.stdout.write(piece)
    sys.stdout.write("\n")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="explaingithub",
        description="Browse a repository and ask questions about it through an ExplainGithub server.",
    )
    parser.add_argument("--url", default=os.environ.get("EXPLAINGITHUB_URL", "http://localhost:8000"),
                        help="Base URL of the ExplainGithub server.")
    parser.add_argument("--email", default=os.environ.get("EXPLAINGITHUB_EMAIL"),
                        help="Act as this signed-in user (uses their stored provider tokens).")
    parser.add_argument("--anonymous-id", default=uuid.uuid4().hex,
                        help="Anonymous session id used when --email is not given.")
    parser.add_argument("--provider", default="github", help="Repository provider (github, gitlab).")

    sub = parser.add_subparsers(dest="command", required=True)

    tree = sub.add_parser("tree", help="Print the repository tree.")
    tree.add_argument("repo", help="owner/repo")
    tree.set_defaults(func=cmd_tree)

    cat = sub.add_parser("cat", help="Print a file from the repository.")
    cat.add_argument("repo", help="owner/repo")
    cat.add_argument("path")
    cat.add_argument("--branch", default=None)
    cat.set_defaults(func=cmd_cat)

    chat = sub.add_parser("chat", help="Ask a question about the repository.")
    chat.add_argument("repo", help="owner/repo")
    chat.add_argument("question")
    chat.add_argument("-f", "--file", action="append", help="Include this file in the context (repeatable).")
    chat.set_defaults(func=cmd_chat)
    return parser


def main(argv=None) -> None:
    args = build_parser().parse_args(argv)
    with httpx.Client(base_url=args.url, headers=_headers(args), timeout=30.0) as client:
        try:
            args.func(client, args)
        except httpx.HTTPError as e:
            raise SystemExit(f"Error: could not reach {args.url}: {e}")


if __name__ == "__main__":
    main()
