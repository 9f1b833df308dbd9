import json

import pytest

import asset_size_diff as asd

HASH = "0123456789abcdef0123"
OTHER_HASH = "fedcba98765432100123"

BASE = {
    f"dist/assets/chunk.vendor.{HASH}.js": {"raw": 1000, "gzip": 400, "brotli": 350},
    f"dist/assets/app.{HASH}.css": {"raw": 300, "gzip": 120, "brotli": 100},
    "dist/assets/removed.css": {"raw": 10, "gzip": 10, "brotli": 10},
}
HEAD = {
    f"dist/assets/chunk.vendor.{OTHER_HASH}.js": {"raw": 1200, "gzip": 450, "brotli": 390},
    f"dist/assets/app.{OTHER_HASH}.css": {"raw": 250, "gzip": 110, "brotli": 95},
    "dist/assets/new.css": {"raw": 40, "gzip": 30, "brotli": 25},
}


@pytest.fixture
def size_files(tmp_path):
    base, head = tmp_path / "base.json", tmp_path / "head.json"
    base.write_text(json.dumps(BASE))
    head.write_text(json.dumps(HEAD))
    return str(base), str(head)


def test_compare_prints_report(size_files, capsys):
    assert asd.main(["compare", *size_files]) == 0
    out = capsys.readouterr().out
    assert "chunk.vendor.js|+200 B (1.20 KB)|+50 B (450 B)|+40 B (390 B)" in out
    assert "new.css|+40 B|+30 B|+25 B" in out
    assert "app.css|-50 B (250 B)|-10 B (110 B)|-5 B (95 B)" in out
    assert "removed.css" not in out


def test_compare_json_payload(size_files, capsys):
    assert asd.main(["compare", *size_files, "--json"]) == 0
    out = capsys.readouterr().out
    payload = json.loads(out.split("===JSON===", 1)[1])
    assert payload["diff"]["new.css"] == {"raw": 40, "gzip": 30, "brotli": 25}
    assert payload["diff"]["app.css"]["absolute"]["raw"] == 250


def test_compare_missing_file_is_an_error(tmp_path, capsys):
    assert asd.main(["compare", str(tmp_path / "a.json"), str(tmp_path / "b.json")]) == 2
    assert "[asset-size-diff] ERROR:" in capsys.readouterr().err


def test_compare_nothing_to_report(tmp_path, capsys):
    empty = tmp_path / "empty.json"
    empty.write_text("{}")
    assert asd.main(["compare", str(empty), str(empty)]) == 0
    assert "No asset files to compare." in capsys.readouterr().out


def test_measure_writes_output(tmp_path, monkeypatch):
    asset = tmp_path / "dist" / "assets" / "app.css"
    asset.parent.mkdir(parents=True)
    asset.write_text("body { color: red; }")
    out = tmp_path / "sizes.json"
    monkeypatch.delenv("ASD_PATTERNS", raising=False)

    assert asd.main(["measure", "--cwd", str(tmp_path), "--output", str(out)]) == 0
    sizes = json.loads(out.read_text())
    assert list(sizes) == ["dist/assets/app.css"]
    assert sizes["dist/assets/app.css"]["raw"] == 20


def test_measure_patterns_from_env(tmp_path, monkeypatch, capsys):
    asset = tmp_path / "build" / "main.js"
    asset.parent.mkdir(parents=True)
    asset.write_text("x")
    monkeypatch.setenv("ASD_PATTERNS", "build/*.js, build/*.css")

    assert asd.main(["measure", "--cwd", str(tmp_path)]) == 0
    assert list(json.loads(capsys.readouterr().out)) == ["build/main.js"]


class FakeProject:
    def __init__(self, fail_base=False):
        self.checkouts = []
        self.fail_base = fail_base

    def current_revision(self, cwd):
        return "feature"

    def checkout(self, ref, cwd):
        self.checkouts.append(ref)

    def build_and_measure(self, cwd, build_command, patterns, install=True):
        if self.checkouts and self.checkouts[-1] != "feature":
            if self.fail_base:
                raise RuntimeError("base build failed")
            return BASE
        return HEAD


@pytest.fixture
def project(monkeypatch):
    monkeypatch.delenv("GITHUB_EVENT_PATH", raising=False)
    monkeypatch.delenv("GITHUB_BASE_REF", raising=False)
    fake = FakeProject()
    monkeypatch.setattr(asd, "current_revision", fake.current_revision)
    monkeypatch.setattr(asd, "checkout", fake.checkout)
    monkeypatch.setattr(asd, "build_and_measure", fake.build_and_measure)
    return fake


def test_report_measures_both_refs_and_restores_checkout(project, capsys):
    assert asd.main(["report", "--skip-install"]) == 0
    assert project.checkouts == ["origin/main", "feature"]
    out = capsys.readouterr().out
    assert out.startswith("Files that got Bigger 🚨:")
    assert "app.css|-50 B" in out


def test_report_base_ref_from_env(project, monkeypatch):
    monkeypatch.setenv("GITHUB_BASE_REF", "develop")
    assert asd.main(["report"]) == 0
    assert project.checkouts == ["origin/develop", "feature"]


def test_report_restores_checkout_when_base_build_fails(project, capsys):
    project.fail_base = True
    assert asd.main(["report", "--ref-base", "origin/release"]) == 2
    assert project.checkouts == ["origin/release", "feature"]
    assert "base build failed" in capsys.readouterr().err


def test_report_comment_without_pull_request(project, capsys):
    assert asd.main(["report", "--comment"]) == 0
    err = capsys.readouterr().err
    assert "Could not get pull request number from context" in err
    assert "skipping comment" in err


def test_report_posts_comment(project, tmp_path, monkeypatch):
    import httpx
    import respx

    event = tmp_path / "event.json"
    event.write_text(json.dumps({
        "pull_request": {
            "number": 3,
            "base": {"ref": "trunk", "repo": {"name": "web", "owner": {"login": "acme"}}},
        }
    }))
    monkeypatch.setenv("GITHUB_EVENT_PATH", str(event))
    monkeypatch.setenv("GITHUB_TOKEN", "t0ken")
    monkeypatch.delenv("GITHUB_API_URL", raising=False)

    pr = {"number": 3, "base": {"ref": "trunk", "repo": {"name": "web", "owner": {"login": "acme"}}}}
    with respx.mock(base_url="https://api.github.com") as router:
        router.get("/repos/acme/web/pulls/3").mock(return_value=httpx.Response(200, json=pr))
        comment = router.post("/repos/acme/web/issues/3/comments").mock(
            return_value=httpx.Response(201, json={"id": 9})
        )
        assert asd.main(["report", "--comment"]) == 0

    assert project.checkouts == ["origin/trunk", "feature"]
    body = json.loads(comment.calls.last.request.content)["body"]
    assert body.startswith("Files that got Bigger 🚨:")


def test_report_uses_event_base_branch_without_calling_api(project, tmp_path, monkeypatch, capsys):
    import respx

    event = tmp_path / "event.json"
    event.write_text(json.dumps({
        "pull_request": {
            "number": 4,
            "base": {"ref": "release", "repo": {"name": "web", "owner": {"login": "acme"}}},
        }
    }))
    monkeypatch.setenv("GITHUB_EVENT_PATH", str(event))
    monkeypatch.delenv("GITHUB_TOKEN", raising=False)
    monkeypatch.setenv("GITHUB_BASE_REF", "ignored")

    with respx.mock(base_url="https://api.github.com", assert_all_called=False) as router:
        assert asd.main(["report", "--skip-install"]) == 0
        assert not router.calls

    assert project.checkouts == ["origin/release", "feature"]
    assert "ERROR" not in capsys.readouterr().err


def test_module_docstring_carries_license_and_exit_codes():
    assert "MIT License" in asd.__doc__
    assert "2 = configuration/runtime error" in asd.__doc__
