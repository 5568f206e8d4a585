"""
MarketRelay Human-like Input
Jittered pointer movement, clicks and a typing primitive that verifies its result.
"""

import re
import random
import logging

from errors import FilterNotApplied

logger = logging.getLogger(__name__)

# Characters stripped before comparing numeric field values
NUMBER_NOISE = re.compile(r"[\s,.$]")

SET_VALUE_SCRIPT = """
(el, value) => {
  const proto = Object.getPrototypeOf(el);
  const setter = Object.getOwnPropertyDescriptor(proto, 'value').set;
  setter.call(el, value);
  el.dispatchEvent(new Event('input', {bubbles: true}));
  el.dispatchEvent(new Event('change', {bubbles: true}));
}
"""


def is_text_match(actual: str, expected: str) -> bool:
    """
    Compare a field's value with what was typed.

    Numeric input is accepted in its formatted forms, so "1,000" and "$1000"
    both match "1000".
    """
    actual = (actual or "").strip()
    expected = (expected or "").strip()
    if actual == expected:
        return True
    actual_digits = NUMBER_NOISE.sub("", actual)
    expected_digits = NUMBER_NOISE.sub("", expected)
    if expected_digits.isdigit() and actual_digits == expected_digits:
        return True
    return False


async def random_delay(page, min_ms: int, max_ms: int):
    """Wait a random amount of time on the page's clock."""
    await page.wait_for_timeout(random.randint(min_ms, max_ms))


async def human_mouse_move(page, steps: int = 3):
    """Move the pointer through a few random points on the viewport."""
    viewport = page.viewport_size or {"width": 1366, "height": 768}
    for _ in range(steps):
        x = random.randint(50, max(51, viewport["width"] - 50))
        y = random.randint(50, max(51, viewport["height"] - 50))
        await page.mouse.move(x, y, steps=random.randint(5, 15))
        await random_delay(page, 100, 300)


async def human_click(page, element):
    """Click a random point inside the element's box, or fall back to element.click()."""
    try:
        await element.scroll_into_view_if_needed()
    except Exception as e:
        logger.debug(f"Could not scroll element into view: {e}")

    box = await element.bounding_box()
    if not box:
        await element.click()
        return

    x = box["x"] + box["width"] * random.uniform(0.3, 0.7)
    y = box["y"] + box["height"] * random.uniform(0.3, 0.7)
    await page.mouse.move(x, y, steps=random.randint(5, 12))
    await random_delay(page, 50, 150)
    await page.mouse.down()
    await random_delay(page, 30, 90)
    await page.mouse.up()


async def _current_value(element) -> str:
    try:
        return await element.input_value()
    except Exception:
        return ""


async def type_text(page, element, text: str) -> str:
    """
    Type text into an input, trying progressively more manual strategies
    until the field holds the expected value.

    Args:
        page: Playwright page
        element: Input element
        text: Value to type

    Returns:
        Name of the strategy that worked

    Raises:
        FilterNotApplied: if no strategy left the expected value in the field
    """

    async def fill():
        await element.click()
        await element.fill(text)

    async def select_and_type():
        await element.click()
        await page.keyboard.press("Control+A")
        await page.keyboard.press("Backspace")
        await page.keyboard.type(text, delay=random.randint(40, 90))

    async def js_set_value():
        await element.evaluate(SET_VALUE_SCRIPT, text)

    async def per_character():
        await element.fill("")
        for char in text:
            await element.press_sequentially(char)
            await random_delay(page, 50, 150)

    strategies = [
        ("fill", fill),
        ("select_and_type", select_and_type),
        ("js_set_value", js_set_value),
        ("per_character", per_character),
    ]

    for name, strategy in strategies:
        try:
            await strategy()
            value = await _current_value(element)
            if is_text_match(value, text):
                logger.debug(f"Typed '{text}' using {name}")
                return name
            logger.debug(f"Strategy {name} left '{value}', expected '{text}'")
        except Exception as e:
            logger.debug(f"Strategy {name} failed: {e}")

    raise FilterNotApplied(f"Could not type '{text}' into field")
