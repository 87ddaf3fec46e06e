"""
Browser-driven retrieval of the monthly report export.

The retrieval is a linear state machine:

    UNAUTHENTICATED -> LOGGED_IN -> DATE_RANGE_SET -> EXPORT_TRIGGERED -> DOWNLOADED

`ReportRetriever` owns the transitions and the download directory; the browser
itself sits behind the `PortalSession` capability so the state machine can run
against a fake in tests. `SeleniumPortalSession` is the Chrome implementation.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import date, timedelta
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Optional, Set, Tuple, Union

from selenium import webdriver
from selenium.common.exceptions import TimeoutException, WebDriverException
from selenium.webdriver.common.by import By
from selenium.webdriver.support import expected_conditions as EC
from selenium.webdriver.support.ui import WebDriverWait

from download_watcher import DEFAULT_POLL_INTERVAL, snapshot_files, wait_for_new_download

# Portal selectors
USERNAME_SELECTOR = "input#id_username"
PASSWORD_SELECTOR = "input#id_password"
LOGIN_SUBMIT_SELECTOR = "button#btn"
FROM_DATE_SELECTOR = "input[name='from_date']"
TO_DATE_SELECTOR = "input[name=to_date]"
SEARCH_SUBMIT_SELECTOR = "button[type=submit]"
EXPORT_BUTTON_SELECTOR = "button[class=table-csv-export-btn]"

REPORT_SEARCH_PATH = "/reports/search/"

DEFAULT_DOWNLOAD_TIMEOUT = 60.0
DEFAULT_ELEMENT_TIMEOUT = 30.0
ELEMENT_POLL_FREQUENCY = 0.2


class BrowserInteractionError(RuntimeError):
    """A portal control could not be found, navigated to, or typed into."""


class RetrievalStateError(RuntimeError):
    """A retrieval transition was attempted out of order."""


class RetrievalState(Enum):
    UNAUTHENTICATED = "unauthenticated"
    LOGGED_IN = "logged_in"
    DATE_RANGE_SET = "date_range_set"
    EXPORT_TRIGGERED = "export_triggered"
    DOWNLOADED = "downloaded"


# ---------------------------------------------------------------------------
# Date window helpers
# ---------------------------------------------------------------------------

def first_and_last_day_of_month(day: date) -> Tuple[date, date]:
    """Return the first and last calendar day of the month containing `day`."""
    first_day = day.replace(day=1)
    if day.month == 12:
        first_of_next_month = date(day.year + 1, 1, 1)
    else:
        first_of_next_month = date(day.year, day.month + 1, 1)
    return first_day, first_of_next_month - timedelta(days=1)


def date_formatter(day: date) -> str:
    """Format as DD/MM/YY, the portal's date field format."""
    return f"{day.day:02d}/{day.month:02d}/{day.year % 100:02d}"


# ---------------------------------------------------------------------------
# Browser capability
# ---------------------------------------------------------------------------

class PortalSession(ABC):
    """Browser operations the retrieval state machine relies on."""

    @abstractmethod
    def open(self, download_dir: Path) -> None:
        """Start the browser, route downloads to `download_dir`, load the portal."""

    @abstractmethod
    def login(self, username: str, password: str) -> None:
        ...

    @abstractmethod
    def set_date_range(self, start_text: str, end_text: str) -> None:
        ...

    @abstractmethod
    def submit_search(self) -> None:
        ...

    @abstractmethod
    def click_export(self) -> None:
        ...

    @abstractmethod
    def close(self) -> None:
        ...


def _default_chrome_factory(options: webdriver.ChromeOptions) -> Any:
    return webdriver.Chrome(options=options)


class SeleniumPortalSession(PortalSession):
    """Chrome session driving the report portal through Selenium."""

    def __init__(
        self,
        report_url: str,
        *,
        headless: bool = False,
        element_timeout: float = DEFAULT_ELEMENT_TIMEOUT,
        driver_factory: Callable[[webdriver.ChromeOptions], Any] = _default_chrome_factory,
    ):
        self.report_url = report_url
        self.headless = headless
        self.element_timeout = element_timeout
        self.driver_factory = driver_factory
        self.driver: Optional[Any] = None

    def _build_options(self, download_dir: Path) -> webdriver.ChromeOptions:
        options = webdriver.ChromeOptions()
        if self.headless:
            options.add_argument("--headless=new")
            options.add_argument("--no-sandbox")
            options.add_argument("--disable-dev-shm-usage")
        options.add_argument("--window-size=1920,1080")
        options.add_experimental_option(
            "prefs",
            {
                "download.default_directory": str(download_dir),
                "download.prompt_for_download": False,
                "download.directory_upgrade": True,
                "safebrowsing.enabled": True,
            },
        )
        return options

    def open(self, download_dir: Path) -> None:
        download_dir = download_dir.resolve()
        logging.info("Launching Chrome (headless=%s), downloads -> %s", self.headless, download_dir)
        try:
            self.driver = self.driver_factory(self._build_options(download_dir))
            # Must be applied before any navigation that could start a download.
            self.driver.execute_cdp_cmd(
                "Page.setDownloadBehavior",
                {"behavior": "allow", "downloadPath": str(download_dir)},
            )
            self.driver.get(self.report_url)
        except WebDriverException as exc:
            raise BrowserInteractionError(f"Failed to open portal at {self.report_url}: {exc.msg or exc}") from exc

    def _require_driver(self) -> Any:
        if self.driver is None:
            raise BrowserInteractionError("Browser session is not open")
        return self.driver

    def _find(self, selector: str) -> Any:
        driver = self._require_driver()
        try:
            return WebDriverWait(
                driver,
                self.element_timeout,
                poll_frequency=ELEMENT_POLL_FREQUENCY,
            ).until(EC.element_to_be_clickable((By.CSS_SELECTOR, selector)))
        except TimeoutException as exc:
            raise BrowserInteractionError(
                f"Control {selector!r} not found within {self.element_timeout:.0f}s"
            ) from exc

    def _click(self, selector: str) -> None:
        element = self._find(selector)
        try:
            element.click()
        except WebDriverException as exc:
            raise BrowserInteractionError(f"Failed to click {selector!r}: {exc.msg or exc}") from exc

    def _type_into(self, selector: str, value: str, label: str) -> None:
        element = self._find(selector)
        try:
            element.click()
            element.send_keys(value)
        except WebDriverException as exc:
            raise BrowserInteractionError(f"Failed to type {label}: {exc.msg or exc}") from exc

    def login(self, username: str, password: str) -> None:
        self._type_into(USERNAME_SELECTOR, username, "username")
        self._type_into(PASSWORD_SELECTOR, password, "password")
        self._click(LOGIN_SUBMIT_SELECTOR)

    def set_date_range(self, start_text: str, end_text: str) -> None:
        self._type_into(FROM_DATE_SELECTOR, start_text, "from date")
        self._type_into(TO_DATE_SELECTOR, end_text, "to date")

    def submit_search(self) -> None:
        self._click(SEARCH_SUBMIT_SELECTOR)

    def click_export(self) -> None:
        self._click(EXPORT_BUTTON_SELECTOR)

    def close(self) -> None:
        if self.driver is None:
            return
        try:
            self.driver.quit()
        except WebDriverException as exc:
            logging.warning("Failed to quit browser cleanly: %s", exc)
        finally:
            self.driver = None


# ---------------------------------------------------------------------------
# Retrieval state machine
# ---------------------------------------------------------------------------

class ReportRetriever:
    """Run the portal workflow and hand back the downloaded export."""

    def __init__(
        self,
        session: PortalSession,
        download_dir: Union[str, Path],
        username: str,
        password: str,
        *,
        download_timeout: float = DEFAULT_DOWNLOAD_TIMEOUT,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        today: Optional[date] = None,
    ):
        self.session = session
        self.download_dir = Path(download_dir).resolve()
        self.username = username
        self.password = password
        self.download_timeout = download_timeout
        self.poll_interval = poll_interval
        self.today = today
        self.state = RetrievalState.UNAUTHENTICATED
        self.baseline: Optional[Set[str]] = None
        self.downloaded_path: Optional[Path] = None

    def _require(self, expected: RetrievalState) -> None:
        if self.state is not expected:
            raise RetrievalStateError(
                f"Cannot leave {self.state.value}: transition requires {expected.value}"
            )

    def login(self) -> None:
        self._require(RetrievalState.UNAUTHENTICATED)
        if not self.username or not self.password:
            raise BrowserInteractionError("Portal credentials are not configured")
        self.download_dir.mkdir(parents=True, exist_ok=True)
        self.session.open(self.download_dir)
        self.session.login(self.username, self.password)
        self.state = RetrievalState.LOGGED_IN
        logging.info("Logged in to report portal")

    def set_date_range(self) -> Tuple[str, str]:
        self._require(RetrievalState.LOGGED_IN)
        first_day, last_day = first_and_last_day_of_month(self.today or date.today())
        start_text, end_text = date_formatter(first_day), date_formatter(last_day)
        self.session.set_date_range(start_text, end_text)
        self.state = RetrievalState.DATE_RANGE_SET
        logging.info("Report window set to %s - %s", start_text, end_text)
        return start_text, end_text

    def trigger_export(self) -> None:
        self._require(RetrievalState.DATE_RANGE_SET)
        self.session.submit_search()
        logging.info("Searching dates...")
        # Snapshot strictly before the click so the new file cannot slip into the baseline.
        self.baseline = snapshot_files(self.download_dir)
        self.session.click_export()
        self.state = RetrievalState.EXPORT_TRIGGERED

    def await_download(self) -> Path:
        self._require(RetrievalState.EXPORT_TRIGGERED)
        path = wait_for_new_download(
            self.download_dir,
            self.baseline or set(),
            self.download_timeout,
            poll_interval=self.poll_interval,
        )
        self.downloaded_path = path
        self.state = RetrievalState.DOWNLOADED
        logging.info("Downloaded file: %s", path)
        return path

    def run(self) -> Path:
        """Perform every transition in order; the browser is always closed."""
        try:
            self.login()
            self.set_date_range()
            self.trigger_export()
            return self.await_download()
        finally:
            self.session.close()
