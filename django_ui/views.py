# /django_ui/views.py
import uuid

from django.shortcuts import redirect, render

from api.schemas import ChatRequest
from services.github_client import GitHubProvider
from services.identity import Identity
from utils.errors import AppError

# Populated by main.py at startup
_state = None


def bind(state) -> None:
    global _state
    _state = state


ANONYMOUS_COOKIE = "anonymous_id"
ANONYMOUS_COOKIE_MAX_AGE = 365 * 24 * 3600


def _identity(request) -> Identity:
    email = request.headers.get("X-User-Email") or None
    anonymous_id = request.headers.get("X-Anonymous-Id") or request.COOKIES.get(ANONYMOUS_COOKIE) or None
    if not email and not anonymous_id:
        anonymous_id = uuid.uuid4().hex
    return Identity(email=email, anonymous_id=anonymous_id)


def _remember_visitor(request, response, identity: Identity):
    if not identity.email and request.COOKIES.get(ANONYMOUS_COOKIE) != identity.anonymous_id:
        response.set_cookie(ANONYMOUS_COOKIE, identity.anonymous_id, max_age=ANONYMOUS_COOKIE_MAX_AGE, samesite="Lax")
    return response


def flatten_tree(nodes, depth=0):
    rows = []
    for node in nodes:
        rows.append({"node": node, "indent": depth * 16})
        rows.extend(flatten_tree(node.children, depth + 1))
    return rows


async def index(request):
    context = {"provider": "github"}
    identity = _identity(request)

    if request.method == "POST":
        slug = request.POST.get("repo", "").strip().strip("/")
        provider = request.POST.get("provider", "github")
        context.update(repo=slug, provider=provider)
        if slug.startswith("http"):
            try:
                owner, repo = GitHubProvider.parse_repo_url(slug)
                return redirect("repo", provider="github", owner=owner, repo=repo)
            except AppError as e:
                context["error"] = e.message
                return render(request, "django_ui/index.html", context)
        parts = slug.split("/")
        if len(parts) < 2 or not all(parts[:2]):
            context["error"] = "Enter a repository as owner/repo."
        else:
            return redirect("repo", provider=provider, owner=parts[0], repo=parts[1])

    if _state is not None and identity.email:
        context["history"] = await _state.history.list(identity.email, limit=10)
    return render(request, "django_ui/index.html", context)


async def repo_view(request, provider, owner, repo):
    identity = _identity(request)
    response = await _repo_page(request, identity, provider, owner, repo)
    return _remember_visitor(request, response, identity)


async def _repo_page(request, identity, provider, owner, repo):
    context = {"provider": provider, "owner": owner, "repo": repo}
    if _state is None:
        context["error"] = "ExplainGithub services are not available."
        return render(request, "django_ui/repo.html", context)

    try:
        client = _state.providers.get(provider)
        token = await _state.tokens.get_token(identity.email, provider)
        tree = await client.get_tree(owner, repo, token=token)
        context["rows"] = flatten_tree(tree)
        await _state.history.add(identity.email, provider, owner, repo)
    except AppError as e:
        context["error"] = e.message
        return render(request, "django_ui/repo.html", context)

    if request.method == "POST":
        question = request.POST.get("question", "").strip()
        files = request.POST.getlist("files")
        context["question"] = question
        if not question:
            context["chat_error"] = "Please enter a question."
        else:
            chat_request = ChatRequest(
                message=question,
                owner=owner,
                repo=repo,
                provider=provider,
                repoContext={
                    "structure": "\n".join(r["node"].path for r in context["rows"]),
                    "taggedFiles": {path: "" for path in files},
                },
            )
            try:
                context["answer"] = await _state.chat.collect(chat_request, identity)
            except AppError as e:
                context["chat_error"] = e.message
            except Exception as e:
                context["chat_error"] = f"Unexpected error: {e}"

    messages = await _state.chat_store.get_messages(owner, repo, provider, identity.user_id)
    context["messages"] = messages
    # A persisted answer already shows up in the conversation
    if context.get("answer") and messages and messages[-1].content == context["answer"]:
        context.pop("answer")
    return render(request, "django_ui/repo.html", context)


async def file_view(request, provider, owner, repo):
    path = request.GET.get("path", "")
    context = {"provider": provider, "owner": owner, "repo": repo, "path": path}
    if _state is None:
        context["error"] = "ExplainGithub services are not available."
    elif not path:
        context["error"] = "No file selected."
    else:
        identity = _identity(request)
        try:
            client = _state.providers.get(provider)
            token = await _state.tokens.get_token(identity.email, provider)
            context["content"] = await client.get_file_content(owner, repo, path, branch=request.GET.get("branch") or None, token=token)
        except AppError as e:
            context["error"] = e.message
    return render(request, "django_ui/file.html", context)
