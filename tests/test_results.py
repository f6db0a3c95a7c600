from borgersync.core.article import ArticleKey
from borgersync.core.results import CANCELLED_MESSAGE, ArticleSnapshot, ResultEntry, ResultLog, Status


class TestStatus:
    def test_codes(self):
        assert Status.UPDATED.code == 200
        assert Status.SKIPPED.code == 204
        assert Status.NOT_MODIFIED.code == 304
        assert Status.FAILED.code == 500


class TestResultLog:
    def test_entries_in_position_order(self):
        log = ResultLog()
        log.append(ResultEntry("2/article", Status.UPDATED, "b"), 1)
        log.append(ResultEntry("1/article", Status.FAILED, "a"), 0)
        assert [e.target_id for e in log] == ["1/article", "2/article"]

    def test_counts(self):
        log = ResultLog()
        log.append(ResultEntry("1", Status.UPDATED, ""))
        log.append(ResultEntry("2", Status.UPDATED, ""))
        log.append(ResultEntry("3", Status.SKIPPED, ""))
        assert log.counts() == {"skipped": 1, "not_modified": 0, "updated": 2, "failed": 0}
        assert len(log.with_status(Status.UPDATED)) == 2

    def test_payload_leaves_out_skipped(self):
        log = ResultLog()
        log.append(ResultEntry("1", Status.SKIPPED, "Article was not found in the catalog."))
        log.append(ResultEntry(
            "2", Status.FAILED, "Unable to update article.", ArticleKey("www.borger.dk", 42, 851),
            12.3456, ArticleSnapshot.of(42, url="https://www.borger.dk/pension"), error="timeout",
        ))

        payload = log.to_payload()
        [entry] = payload["data"]
        assert entry == {
            "target": "2",
            "status": 500,
            "message": "Unable to update article.",
            "duration": 12.346,
            "domain": "www.borger.dk",
            "municipality": 851,
            "article": {"id": 42, "title": "", "url": "https://www.borger.dk/pension"},
            "error": "timeout",
        }
        assert payload["summary"]["skipped"] == 1
        assert len(log.to_payload(include_skipped=True)["data"]) == 2

    def test_cancelled_entries(self):
        assert ResultEntry("1", Status.SKIPPED, CANCELLED_MESSAGE).cancelled
        assert not ResultEntry("1", Status.SKIPPED, "Article was not found in the catalog.").cancelled
