"""Tests for captcha and block page detection."""

import unittest

from leadscrape.captcha import CaptchaDetector, failed_rate_exceeded
from leadscrape.errors import CaptchaDetectedError
from tests.fakes import FakePage


class TestCaptchaDetector(unittest.TestCase):
    def test_clean_page(self):
        """An ordinary page has no indicators."""
        detection = CaptchaDetector().detect(FakePage(html="<div>Alpha Pharmacy</div>"), status=200)
        self.assertFalse(detection.detected)
        self.assertEqual(detection.indicators, [])
        detection.raise_if_detected("https://example.com")

    def test_blocking_status(self):
        """HTTP 429 counts as a challenge."""
        detection = CaptchaDetector().detect(FakePage(), status=429)
        self.assertTrue(detection.detected)
        self.assertIn("http_429", detection.indicators)

    def test_keyword_in_html(self):
        """Challenge phrases are matched case-insensitively."""
        page = FakePage(html="<p>Please VERIFY YOU ARE HUMAN</p>")
        self.assertIn("keyword:verify you are human", CaptchaDetector().detect(page).indicators)

    def test_selector_present(self):
        """A recaptcha iframe is reported by selector."""
        page = FakePage(selectors={'iframe[src*="recaptcha"]'})
        detection = CaptchaDetector().detect(page)
        self.assertEqual(detection.indicators, ['selector:iframe[src*="recaptcha"]'])

    def test_raise_if_detected(self):
        """raise_if_detected() carries the indicators."""
        detection = CaptchaDetector().detect(FakePage(), status=403)
        with self.assertRaises(CaptchaDetectedError) as ctx:
            detection.raise_if_detected("https://example.com/x")
        self.assertEqual(ctx.exception.indicators, ["http_403"])

    def test_plain_word_captcha_is_not_enough(self):
        """Pages that merely mention captchas should not be flagged."""
        detection = CaptchaDetector().detect_html("<p>We never show a captcha challenge.</p>")
        self.assertFalse(detection.detected)

    def test_detect_html(self):
        """detect_html() checks markup and status without a page."""
        self.assertTrue(CaptchaDetector().detect_html('<div class="g-recaptcha"></div>').detected)
        self.assertTrue(CaptchaDetector().detect_html("", status=403).detected)


class TestFailedRate(unittest.TestCase):
    def test_threshold(self):
        """The failure rate threshold is exclusive."""
        self.assertFalse(failed_rate_exceeded(1, 2))
        self.assertTrue(failed_rate_exceeded(1, 3))
        self.assertFalse(failed_rate_exceeded(0, 0))
        self.assertTrue(failed_rate_exceeded(7, 10, threshold=0.2))


if __name__ == "__main__":
    unittest.main()
