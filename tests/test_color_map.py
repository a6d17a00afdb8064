import unittest

from agenda.color_map import CATEGORY_COLOR_IDS, DEFAULT_COLOR_ID, to_local_category, to_remote_color
from agenda.models import EventCategory


class ColorMapTests(unittest.TestCase):
    def test_every_category_has_a_color(self) -> None:
        self.assertEqual(set(CATEGORY_COLOR_IDS), set(EventCategory))

    def test_forward_mapping(self) -> None:
        expected = {
            "meeting": "11",
            "development": "9",
            "task": "10",
            "break": "8",
            "training": "3",
            "unavailable": "6",
            "deadline": "11",
            "reminder": "5",
            "other": "1",
        }
        for category, color in expected.items():
            with self.subTest(category=category):
                self.assertEqual(to_remote_color(category), color)

    def test_unknown_or_missing_category_uses_default_color(self) -> None:
        self.assertEqual(to_remote_color(None), DEFAULT_COLOR_ID)
        self.assertEqual(to_remote_color("holiday"), DEFAULT_COLOR_ID)

    def test_shared_color_resolves_to_first_category(self) -> None:
        self.assertEqual(to_local_category("11"), EventCategory.MEETING)
        self.assertEqual(to_local_category(to_remote_color(EventCategory.DEADLINE)), EventCategory.MEETING)

    def test_unknown_color_is_other(self) -> None:
        self.assertEqual(to_local_category(None), EventCategory.OTHER)
        self.assertEqual(to_local_category("4"), EventCategory.OTHER)
        self.assertEqual(to_local_category(" 9 "), EventCategory.DEVELOPMENT)


if __name__ == "__main__":
    unittest.main()
