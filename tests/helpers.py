import datetime as dt

import hourglass as hg

BASE_TIME = dt.datetime(2024, 1, 10, 10, 0, tzinfo=dt.timezone.utc)


def make_issue(number: int = 1, **overrides) -> hg.Issue:
    base = dict(
        id=1000 + number,
        number=number,
        title=f"Issue {number}",
        body="Steps to reproduce",
        created_at=BASE_TIME,
        updated_at=BASE_TIME,
        author=hg.IssueAuthor(login="octocat", id=1),
        html_url=f"https://github.com/acme/repo/issues/{number}",
    )
    base.update(overrides)
    return hg.Issue(**base)


def issue_payload(number: int = 1, **overrides) -> dict:
    base = {
        "id": 1000 + number,
        "number": number,
        "title": f"Issue {number}",
        "body": None,
        "created_at": "2024-01-10T10:00:00Z",
        "updated_at": "2024-01-11T10:00:00Z",
        "user": {"login": "octocat", "id": 1, "node_id": "MDQ6VXNlcjE="},
        "html_url": f"https://github.com/acme/repo/issues/{number}",
    }
    base.update(overrides)
    return base


class FakeSource:
    """Stand-in for the GitHub fetch collaborator."""

    def __init__(self, issues=None, error=None):
        self.issues = list(issues or [])
        self.error = error
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return list(self.issues)


class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def keys(text: str):
    return [hg.Key.of(ch) for ch in text]


def press(interaction, *items):
    """Feed characters (str) and Key objects to the interaction."""
    for item in items:
        if isinstance(item, str):
            for key in keys(item):
                interaction.handle(key)
        else:
            interaction.handle(item)


ENTER = hg.Key(hg.KeyKind.ENTER)
ESC = hg.Key(hg.KeyKind.ESC)
BACKSPACE = hg.Key(hg.KeyKind.BACKSPACE)
UP = hg.Key(hg.KeyKind.UP)
DOWN = hg.Key(hg.KeyKind.DOWN)
