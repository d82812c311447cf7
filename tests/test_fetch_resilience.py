"""Tests for fetch resilience: URL building, HTML / empty detection,
retry with backoff, and per-source isolation.
"""

import sys
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
import requests

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))
from sheet_fetcher import (
    GoogleSheetSource,
    LocalSheetSource,
    SheetFetchError,
    SheetFormatError,
    build_csv_url,
    check_response_text,
    fetch_all,
    fetch_with_retry,
)


def _response(status=200, text="Ticker,Name\n7203,Toyota\n"):
    resp = MagicMock()
    resp.status_code = status
    resp.ok = status < 400
    resp.text = text
    return resp


# =====================================================================
# URL BUILDING
# =====================================================================

class TestBuildCsvUrl:
    def test_known_sheet(self, cfg):
        url = build_csv_url("Indices", cfg.sheets)
        assert url.endswith("/export?format=csv&gid=593468503")
        assert cfg.sheets.spreadsheet_id in url

    def test_unknown_sheet_raises(self, cfg):
        with pytest.raises(KeyError, match="Unknown sheet"):
            build_csv_url("Nope", cfg.sheets)


# =====================================================================
# RESPONSE CHECKS
# =====================================================================

class TestResponseText:
    def test_html_rejected(self):
        with pytest.raises(SheetFormatError, match="HTML instead of CSV"):
            check_response_text("Indices", "<!DOCTYPE html><html>login</html>")

    def test_html_is_not_retryable(self):
        assert SheetFormatError("x").retryable is False

    def test_empty_is_warning_not_error(self, caplog):
        with caplog.at_level("WARNING", logger="dashboard.fetch"):
            assert check_response_text("Indices", "  \n") == ""
        assert "empty response" in caplog.text

    def test_csv_passes(self):
        assert check_response_text("Indices", "a,b\n") == "a,b\n"


# =====================================================================
# GOOGLE SOURCE
# =====================================================================

class TestGoogleSheetSource:
    def test_success(self, cfg):
        session = MagicMock()
        session.get.return_value = _response()
        text = GoogleSheetSource(cfg, session=session).fetch_text("Indices")
        assert text.startswith("Ticker")
        _, kwargs = session.get.call_args
        assert kwargs["timeout"] == cfg.fetch.timeout_seconds

    def test_transport_error_is_retryable(self, cfg):
        session = MagicMock()
        session.get.side_effect = requests.ConnectionError("reset")
        with pytest.raises(SheetFetchError) as exc:
            GoogleSheetSource(cfg, session=session).fetch_text("Indices")
        assert exc.value.retryable

    def test_forbidden_not_retryable(self, cfg):
        session = MagicMock()
        session.get.return_value = _response(status=403, text="")
        with pytest.raises(SheetFetchError) as exc:
            GoogleSheetSource(cfg, session=session).fetch_text("Indices")
        assert not exc.value.retryable

    def test_server_error_retryable(self, cfg):
        session = MagicMock()
        session.get.return_value = _response(status=503, text="")
        with pytest.raises(SheetFetchError) as exc:
            GoogleSheetSource(cfg, session=session).fetch_text("Indices")
        assert exc.value.retryable

    def test_html_login_page(self, cfg):
        session = MagicMock()
        session.get.return_value = _response(text="<html><body>Sign in</body></html>")
        with pytest.raises(SheetFormatError):
            GoogleSheetSource(cfg, session=session).fetch_text("Indices")


# =====================================================================
# RETRY
# =====================================================================

class TestFetchWithRetry:
    @patch("sheet_fetcher.time.sleep")
    def test_retries_then_succeeds(self, mock_sleep):
        source = MagicMock()
        source.fetch_text.side_effect = [SheetFetchError("timeout"), "a,b\n"]
        assert fetch_with_retry(source, "Indices", max_retries=3) == "a,b\n"
        assert source.fetch_text.call_count == 2
        mock_sleep.assert_called_once_with(1)

    @patch("sheet_fetcher.time.sleep")
    def test_exponential_backoff(self, mock_sleep):
        source = MagicMock()
        source.fetch_text.side_effect = SheetFetchError("timeout")
        with pytest.raises(SheetFetchError, match="Failed after 3 retries"):
            fetch_with_retry(source, "Indices", max_retries=3)
        assert [c.args[0] for c in mock_sleep.call_args_list] == [1, 2]

    @patch("sheet_fetcher.time.sleep")
    def test_non_retryable_fails_immediately(self, mock_sleep):
        source = MagicMock()
        source.fetch_text.side_effect = SheetFormatError("html")
        with pytest.raises(SheetFormatError):
            fetch_with_retry(source, "Indices", max_retries=3)
        assert source.fetch_text.call_count == 1
        mock_sleep.assert_not_called()


# =====================================================================
# PER-SOURCE ISOLATION
# =====================================================================

class TestFetchAll:
    @patch("sheet_fetcher.time.sleep")
    def test_one_failure_does_not_block_others(self, mock_sleep):
        source = MagicMock()

        def fake(sheet):
            if sheet == "Sectors":
                raise SheetFetchError("boom", retryable=False)
            return f"{sheet},x\n"

        source.fetch_text.side_effect = fake
        texts, errors = fetch_all(source, ["Indices", "Sectors", "St_Momentum"])
        assert texts["Indices"] == "Indices,x\n"
        assert texts["St_Momentum"] == "St_Momentum,x\n"
        assert texts["Sectors"] == ""
        assert list(errors) == ["Sectors"]

    def test_unexpected_exception_is_isolated(self):
        source = MagicMock()

        def fake(sheet):
            if sheet == "Sectors":
                raise PermissionError("denied")
            return f"{sheet},x\n"

        source.fetch_text.side_effect = fake
        texts, errors = fetch_all(source, ["Indices", "Sectors", "St_Momentum"])
        assert texts["St_Momentum"] == "St_Momentum,x\n"
        assert texts["Indices"] == "Indices,x\n"
        assert texts["Sectors"] == ""
        assert errors == {"Sectors": "PermissionError: denied"}

    def test_order_follows_request(self):
        source = MagicMock()
        source.fetch_text.side_effect = lambda s: s
        texts, _ = fetch_all(source, ["C", "A", "B"], max_workers=3)
        assert list(texts) == ["C", "A", "B"]

    def test_unknown_sheet_is_isolated(self, cfg):
        session = MagicMock()
        session.get.return_value = _response()
        texts, errors = fetch_all(GoogleSheetSource(cfg, session=session),
                                  ["Indices", "Nope"])
        assert texts["Indices"]
        assert "Nope" in errors


class TestLocalSource:
    def test_reads_fixture(self, sheets_dir):
        assert LocalSheetSource(sheets_dir).fetch_text("Sectors").startswith(",RS_21")

    def test_missing_file_not_retryable(self, tmp_path):
        with pytest.raises(SheetFetchError) as exc:
            LocalSheetSource(tmp_path).fetch_text("Indices")
        assert not exc.value.retryable

    def test_non_utf8_file_is_fetch_error(self, tmp_path):
        (tmp_path / "Sectors.csv").write_bytes(",RS_21\n電気機器,65\n".encode("cp932"))
        with pytest.raises(SheetFetchError, match="cannot read") as exc:
            LocalSheetSource(tmp_path).fetch_text("Sectors")
        assert not exc.value.retryable

    def test_unreadable_file_is_fetch_error(self, tmp_path):
        (tmp_path / "Sectors.csv").write_text("a,b\n", encoding="utf-8")
        with patch("pathlib.Path.read_text", side_effect=PermissionError("denied")):
            with pytest.raises(SheetFetchError, match="denied") as exc:
                LocalSheetSource(tmp_path).fetch_text("Sectors")
        assert not exc.value.retryable
