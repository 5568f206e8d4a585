"""Shared fakes and fixtures: an in-memory page, locator, launcher and extractor."""

import dataclasses
from typing import Dict, List, Optional

import pytest

from browser.checkpoint import CheckpointHandler
from browser.health import HealthMonitor
from browser.locator import Intent, Locator
from config import MARKETPLACE_URL
from database import Listing
from dedup import ListingDedupStore
from image_cache import ImageCache
from pipeline import ListingsPipeline
from recovery import RecoveryOrchestrator
from retry import RetryPolicy
from scrapers.base import BaseExtractor


async def no_sleep(seconds):
    return None


class FakeMouse:
    def __init__(self):
        self.moves = 0
        self.clicks = 0

    async def move(self, x, y, steps=1):
        self.moves += 1

    async def down(self):
        pass

    async def up(self):
        self.clicks += 1

    async def click(self, x, y):
        self.clicks += 1


class FakeKeyboard:
    def __init__(self, page):
        self.page = page
        self.pressed: List[str] = []

    async def press(self, key):
        self.pressed.append(key)

    async def type(self, text, delay=0):
        pass


class FakeElement:
    """Stand-in for a Playwright locator/element handle."""

    def __init__(self, name="element", value="", visible=True, hide_on_click=False,
                 accepts_fill=True):
        self.name = name
        self.value = value
        self.visible = visible
        self.hide_on_click = hide_on_click
        self.accepts_fill = accepts_fill
        self.clicks = 0
        self.hovers = 0

    async def click(self):
        self.clicks += 1
        if self.hide_on_click:
            self.visible = False

    async def hover(self):
        self.hovers += 1

    async def fill(self, text):
        if self.accepts_fill:
            self.value = text

    async def input_value(self):
        return self.value

    async def press_sequentially(self, text):
        self.value += text

    async def evaluate(self, script, arg=None):
        self.value = arg

    async def bounding_box(self):
        # No box makes human_click fall back to click()
        return None

    async def scroll_into_view_if_needed(self):
        pass

    async def is_visible(self):
        return self.visible


class FakeListingTab:
    """A separate tab opened to read a listing's age."""

    def __init__(self, labels: Dict[str, Optional[str]]):
        self.labels = labels
        self.label: Optional[str] = None
        self.closed = False

    async def goto(self, url, **kwargs):
        self.label = self.labels.get(url)

    async def wait_for_timeout(self, ms):
        pass

    async def query_selector(self, selector):
        if self.label is None:
            return None
        return FakeAbbr(self.label)

    async def close(self):
        self.closed = True


class FakeAbbr:
    def __init__(self, label):
        self.label = label

    async def get_attribute(self, name):
        return self.label


class FakeContext:
    def __init__(self):
        self.geolocation = None
        self.closed = False
        self.age_labels: Dict[str, Optional[str]] = {}
        self.tabs: List[FakeListingTab] = []

    async def set_geolocation(self, geolocation):
        self.geolocation = geolocation

    async def new_page(self):
        tab = FakeListingTab(self.age_labels)
        self.tabs.append(tab)
        return tab

    async def close(self):
        self.closed = True


class FakePage:
    """In-memory page. Elements are keyed by Intent and served by FakeLocator."""

    def __init__(self, url=MARKETPLACE_URL, html="<html></html>", title="Marketplace"):
        self.url = url
        self.html = html
        self._title = title
        self.dead = False
        self.goto_error: Optional[Exception] = None
        self.reload_error: Optional[Exception] = None
        self.elements: Dict[Intent, FakeElement] = {}
        self.visited: List[str] = []
        self.reloads = 0
        self.screenshots: List[str] = []
        self.viewport_size = {"width": 1366, "height": 768}
        self.mouse = FakeMouse()
        self.keyboard = FakeKeyboard(self)
        self.context = FakeContext()

    async def title(self):
        if self.dead:
            raise RuntimeError("Target page, context or browser has been closed")
        return self._title

    async def goto(self, url, **kwargs):
        if self.goto_error is not None:
            raise self.goto_error
        self.visited.append(url)
        self.url = url

    async def reload(self, **kwargs):
        if self.reload_error is not None:
            raise self.reload_error
        self.reloads += 1

    async def wait_for_timeout(self, ms):
        pass

    async def screenshot(self, path=None, full_page=False):
        self.screenshots.append(path)

    async def content(self):
        return self.html

    async def evaluate(self, script, arg=None):
        return None


class FakeLocator(Locator):
    def __init__(self, page):
        self.page = page

    async def find(self, intent, text=None, timeout_ms=None):
        element = self.page.elements.get(intent)
        if element is not None and element.visible:
            return element
        return None


class FakeLauncher:
    def __init__(self):
        self.launches = 0
        self.fail = False
        self.closed = []
        self.stopped = False
        self.pages: List[FakePage] = []
        self.prepare = None

    async def launch(self):
        if self.fail:
            raise RuntimeError("browser failed to launch")
        self.launches += 1
        page = FakePage()
        if self.prepare is not None:
            self.prepare(page)
        self.pages.append(page)
        return page.context, page

    async def close(self, context):
        if context is not None:
            self.closed.append(context)

    async def stop(self):
        self.stopped = True


class RecordingActions:
    """FilterActions double that records every call."""

    def __init__(self):
        self.calls = []
        self.results: Dict[str, bool] = {}
        self.errors: Dict[str, Exception] = {}

    def _record(self, name, *args):
        self.calls.append((name,) + args)
        if name in self.errors:
            raise self.errors[name]
        return self.results.get(name, True)

    def names(self):
        return [call[0] for call in self.calls]

    async def navigate_home(self, page, locator):
        page.url = MARKETPLACE_URL
        return self._record("navigate_home")

    async def search(self, page, locator, query):
        return self._record("search", query)

    async def select_category(self, page, locator, name):
        return self._record("select_category", name)

    async def set_location(self, page, locator, params):
        return self._record("set_location", params.city, params.radius, params.latitude, params.longitude)

    async def set_price(self, page, locator, min_price, max_price):
        return self._record("set_price", min_price, max_price)

    async def apply_last_24_hours(self, page, locator):
        return self._record("apply_last_24_hours")


class FakeExtractor(BaseExtractor):
    """Returns scripted listing batches, one per call (the last one repeats)."""

    def __init__(self, batches=None):
        super().__init__("fake")
        self.batches: List[List[Listing]] = batches or [[]]
        self.errors: List[Optional[Exception]] = []
        self.ages: Dict[str, Optional[int]] = {}
        self.age_lookups: List[str] = []
        self.calls = 0

    async def extract_listings(self, page, count):
        self.calls += 1
        if self.errors:
            error = self.errors.pop(0)
            if error is not None:
                raise error
        batch = self.batches[min(self.calls - 1, len(self.batches) - 1)]
        return [dataclasses.replace(item) for item in batch]

    async def listing_age_minutes(self, context, url, timeout_ms=0):
        self.age_lookups.append(url)
        return self.ages.get(url)


def make_listing(n, title=None, price="$100", location="Austin, TX", image=True, age=None):
    return Listing(
        url=f"https://www.facebook.com/marketplace/item/{n}/",
        title=title or f"Listing number {n}",
        price=price,
        location=location,
        image_url=f"https://cdn.example.com/{n}.jpg" if image else None,
        age_minutes=age,
    )


def write_fake_image(url, path):
    path.write_bytes(b"\x89PNG fake")


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "test.db"


@pytest.fixture
def dedup(db_path):
    return ListingDedupStore(db_path=db_path, max_global=100, max_session=50, flush_retain=20)


@pytest.fixture
def images(tmp_path):
    return ImageCache(image_dir=tmp_path / "img", max_entries=100, downloader=write_fake_image)


@pytest.fixture
def launcher():
    return FakeLauncher()


@pytest.fixture
def actions():
    return RecordingActions()


@pytest.fixture
def orchestrator(launcher, actions, tmp_path):
    return RecoveryOrchestrator(
        launcher=launcher,
        locator_factory=FakeLocator,
        actions=actions,
        health=HealthMonitor(timeout_seconds=1),
        checkpoint=CheckpointHandler(screenshot_dir=tmp_path / "shots"),
        categories=[{"name": "Vehicles", "id": "vehicles", "selector": ""}],
        settle_seconds=0,
        grace_seconds=0,
        sleep=no_sleep,
    )


@pytest.fixture
def extractor():
    return FakeExtractor()


@pytest.fixture
def pipeline(orchestrator, extractor, dedup, images):
    return ListingsPipeline(
        orchestrator,
        extractor,
        dedup,
        images,
        policy=RetryPolicy(max_attempts=3, base_delay=0, jitter=0),
        sleep=no_sleep,
    )
