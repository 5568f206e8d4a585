import pytest

from browser.actions import FilterActions, LocationParams, has_last_24_hours, with_last_24_hours
from browser.human import is_text_match, type_text
from browser.locator import Intent
from errors import FilterNotApplied
from conftest import FakeElement, FakeLocator, FakePage


def test_with_last_24_hours_keeps_existing_params():
    url = with_last_24_hours("https://www.facebook.com/marketplace/search?query=sofa")
    assert "query=sofa" in url
    assert has_last_24_hours(url)
    assert not has_last_24_hours("https://www.facebook.com/marketplace/search?query=sofa")


def test_is_text_match_accepts_formatted_numbers():
    assert is_text_match("1,000", "1000")
    assert is_text_match("$1000", "1000")
    assert is_text_match(" sofa ", "sofa")
    assert not is_text_match("100", "1000")
    assert not is_text_match("sofas", "sofa")


@pytest.mark.asyncio
async def test_type_text_falls_back_when_fill_is_ignored():
    page = FakePage()
    field = FakeElement("input", accepts_fill=False)

    strategy = await type_text(page, field, "250")

    assert strategy == "js_set_value"
    assert field.value == "250"


@pytest.mark.asyncio
async def test_type_text_raises_when_nothing_sticks():
    class StubbornElement(FakeElement):
        async def evaluate(self, script, arg=None):
            pass

        async def press_sequentially(self, text):
            pass

    page = FakePage()
    with pytest.raises(FilterNotApplied):
        await type_text(page, StubbornElement(accepts_fill=False), "250")


@pytest.mark.asyncio
async def test_apply_last_24_hours_via_url():
    page = FakePage(url="https://www.facebook.com/marketplace/search?query=sofa")

    assert await FilterActions().apply_last_24_hours(page, FakeLocator(page))
    assert has_last_24_hours(page.visited[-1])


@pytest.mark.asyncio
async def test_apply_last_24_hours_falls_back_to_menus():
    class RedirectingPage(FakePage):
        async def goto(self, url, **kwargs):
            self.visited.append(url)

    page = RedirectingPage(url="https://www.facebook.com/marketplace/")
    clicks = {}
    for intent in (Intent.SORT_MENU, Intent.SORT_NEWEST, Intent.DATE_LISTED_MENU, Intent.LAST_24_HOURS):
        clicks[intent] = page.elements[intent] = FakeElement(intent.value)

    assert await FilterActions().apply_last_24_hours(page, FakeLocator(page))
    assert all(element.clicks == 1 for element in clicks.values())


@pytest.mark.asyncio
async def test_set_location_sets_geolocation_and_clicks_through():
    page = FakePage()
    for intent in (Intent.LOCATION_MENU, Intent.USE_CURRENT_LOCATION, Intent.APPLY_BUTTON):
        page.elements[intent] = FakeElement(intent.value)

    ok = await FilterActions().set_location(
        page, FakeLocator(page), LocationParams("Austin", 20, 30.27, -97.74)
    )

    assert ok
    assert page.context.geolocation == {"latitude": 30.27, "longitude": -97.74}
    assert page.elements[Intent.APPLY_BUTTON].clicks == 1
    assert has_last_24_hours(page.url)


@pytest.mark.asyncio
async def test_set_location_missing_step_returns_false():
    page = FakePage()
    page.elements[Intent.LOCATION_MENU] = FakeElement("menu")

    ok = await FilterActions().set_location(
        page, FakeLocator(page), LocationParams("Austin", 20, 30.27, -97.74)
    )
    assert ok is False


@pytest.mark.asyncio
async def test_set_price_types_both_bounds():
    page = FakePage()
    page.elements[Intent.MIN_PRICE_INPUT] = FakeElement("min")
    page.elements[Intent.MAX_PRICE_INPUT] = FakeElement("max")

    assert await FilterActions().set_price(page, FakeLocator(page), 50, 500)
    assert page.elements[Intent.MIN_PRICE_INPUT].value == "50"
    assert page.elements[Intent.MAX_PRICE_INPUT].value == "500"
    assert page.keyboard.pressed.count("Enter") == 2


@pytest.mark.asyncio
async def test_search_requires_results_url():
    page = FakePage()
    page.elements[Intent.SEARCH_INPUT] = FakeElement("search")

    # The fake page never navigates on Enter, so the results URL never appears
    assert await FilterActions().search(page, FakeLocator(page), "sofa") is False
    assert page.elements[Intent.SEARCH_INPUT].value == "sofa"
