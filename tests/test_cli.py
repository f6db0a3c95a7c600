import json

import pytest

from borgersync import cli
from borgersync.core.results import CANCELLED_MESSAGE, ResultEntry, ResultLog, Status
from borgersync.core.state import StateStore
from borgersync.core.targets import SELECTION_KIND
from borgersync.errors import ValidationError
from borgersync.fetchers.borgerdk import ArticleFetcher

from conftest import FakeTargetStore, article_page, remote_article, selection_value


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "borgersync.yaml"
    path.write_text(
        f"cache:\n  directory: {tmp_path / 'cache'}\n"
        f"state:\n  path: {tmp_path / 'state.json'}\n"
        f"targets:\n  path: {tmp_path / 'targets.json'}\n",
        encoding="utf-8",
    )
    return str(path)


@pytest.fixture
def targets_file(tmp_path):
    pages = [
        {"id": page_id, "name": f"Side {page_id}", "properties": [
            {"alias": "article", "kind": SELECTION_KIND, "value": selection_value(page_id)},
        ]}
        for page_id in (1, 2, 3)
    ]
    path = tmp_path / "targets.json"
    path.write_text(json.dumps({"pages": pages}), encoding="utf-8")
    return path


@pytest.fixture
def fake_remote(service, monkeypatch):
    for article_id in (1, 2, 3):
        service.add("www.borger.dk", remote_article(article_id, f"Artikel {article_id}"))
    monkeypatch.setattr(
        cli, "create_fetcher",
        lambda cfg: ArticleFetcher(cfg.endpoints(), client_factory=service.client_factory),
    )
    return service


def output(capsys):
    return json.loads(capsys.readouterr().out)


# ── arguments ─────────────────────────────────────────────────

class TestArguments:
    def test_update_targets_options(self):
        args = cli.parse_args(["--workers", "4", "update-targets", "--page", "1050", "--force"])
        assert args.workers == 4
        assert args.page == 1050
        assert args.force
        assert args.func is cli.update_targets

    def test_command_required(self):
        with pytest.raises(SystemExit):
            cli.parse_args([])

    def test_municipality(self):
        assert cli.parse_municipality("851") == 851
        for value in (None, "", "abc", "-1"):
            with pytest.raises(ValidationError):
                cli.parse_municipality(value)


class TestPagesToUpdate:
    def store(self):
        return FakeTargetStore([article_page(i, str(i), selection_value(i)) for i in (1, 2, 3)])

    def test_invalid_page_id(self):
        args = cli.parse_args(["update-targets", "--page", "0"])
        with pytest.raises(ValidationError) as exc:
            cli.pages_to_update(args, self.store(), StateStore())
        assert exc.value.code == 400

    def test_page_not_found(self):
        args = cli.parse_args(["update-targets", "--page", "99"])
        with pytest.raises(ValidationError) as exc:
            cli.pages_to_update(args, self.store(), StateStore())
        assert exc.value.code == 404

    def test_steps_move_cursor_after_the_run(self):
        args = cli.parse_args(["update-targets", "--steps", "2"])
        state = StateStore()
        store = self.store()

        step = cli.pages_to_update(args, store, state)
        assert [p.id for p in step] == [1, 2]
        assert state.cursor == 0

        cli.advance_cursor(store, state, step, ResultLog())
        step = cli.pages_to_update(args, store, state)
        assert [p.id for p in step] == [3]
        cli.advance_cursor(store, state, step, ResultLog())
        assert state.cursor == 0

    def test_cancelled_pages_are_taken_again(self):
        args = cli.parse_args(["update-targets", "--steps", "3"])
        state = StateStore()
        store = self.store()
        step = cli.pages_to_update(args, store, state)
        log = ResultLog()
        log.append(ResultEntry("1/article", Status.UPDATED, "Article was successfully updated."))
        log.append(ResultEntry("2/article", Status.SKIPPED, CANCELLED_MESSAGE))
        log.append(ResultEntry("3/article", Status.SKIPPED, CANCELLED_MESSAGE))

        cli.advance_cursor(store, state, step, log)

        assert state.cursor == 1
        assert [p.id for p in cli.pages_to_update(args, store, state)] == [2, 3]


# ── commands ──────────────────────────────────────────────────

class TestMain:
    def test_missing_cache_directory(self, config_file, capsys):
        assert cli.main(["--config", config_file, "update-cache"]) == cli.EXIT_FAILURE
        assert output(capsys) == {"meta": {"code": 500, "error": "Storage directory does not exist."}}

    def test_invalid_page(self, config_file, capsys):
        assert cli.main(["--config", config_file, "update-targets", "--page", "-3"]) == cli.EXIT_INVALID
        assert output(capsys)["meta"]["error"] == "Invalid page ID specified."

    def test_article_unknown_domain(self, config_file, capsys):
        code = cli.main(["--config", config_file, "article", "--url", "https://www.example.com/a",
                         "--municipality", "0"])
        assert code == cli.EXIT_INVALID
        assert output(capsys)["meta"]["code"] == 400

    def test_update_targets(self, config_file, targets_file, fake_remote, capsys, tmp_path):
        assert cli.main(["--config", config_file, "update-targets", "--steps", "2"]) == cli.EXIT_OK

        payload = output(capsys)
        assert [e["target"] for e in payload["data"]] == ["1/article", "2/article"]
        assert all(e["status"] == 200 for e in payload["data"])
        assert StateStore(tmp_path / "state.json").cursor == 2
        assert "Artikel 1" in json.loads(targets_file.read_text(encoding="utf-8"))["pages"][0]["properties"][0]["value"]

    def test_update_cache(self, config_file, targets_file, fake_remote, capsys):
        cli.main(["--config", config_file, "update-targets"])
        capsys.readouterr()

        assert cli.main(["--config", config_file, "update-cache"]) == cli.EXIT_OK
        assert output(capsys)["summary"]["not_modified"] == 3

    def test_list_articles(self, config_file, targets_file, fake_remote, capsys):
        assert cli.main(["--config", config_file, "list-articles"]) == cli.EXIT_OK
        data = output(capsys)["data"]
        assert [page["id"] for page in data] == [1, 2, 3]
        assert data[0]["properties"][0]["info"]["isUpdated"] is False

    def test_article(self, config_file, fake_remote, capsys):
        code = cli.main(["--config", config_file, "article", "--url", "https://www.borger.dk/artikel-2",
                         "--municipality", "0", "--micro"])
        assert code == cli.EXIT_OK
        data = output(capsys)["data"]
        assert data["title"] == "Artikel 2"
        assert [e["id"] for e in data["elements"]] == ["101", "102"]

    def test_article_not_found(self, config_file, fake_remote, capsys):
        code = cli.main(["--config", config_file, "article", "--url", "https://www.borger.dk/findes-ikke",
                         "--municipality", "0", "--no-cache"])
        assert code == cli.EXIT_FAILURE
        assert output(capsys)["meta"]["code"] == 404
