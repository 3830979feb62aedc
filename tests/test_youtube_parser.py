
import unittest
import sys
import os

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

import custom_parsers.youtube as parser
from site_strategies import load_custom_parsers

WATCH_PAGE = (
    '<html><head><title>Video - YouTube</title></head><body>'
    '<script>var ytInitialPlayerResponse = {"videoDetails":{"videoId":"dQw4w9WgXcQ",'
    '"shortDescription":"First line\\nSecond \\"quoted\\" line \\u0026 more","isLiveContent":false}};</script>'
    '</body></html>'
)


class TestYoutubeParser(unittest.TestCase):

    def test_pattern(self):
        registry = load_custom_parsers(parser_filter=['youtube'])
        self.assertEqual(registry.match('https://www.youtube.com/watch?v=dQw4w9WgXcQ').name, 'youtube')
        self.assertEqual(registry.match('https://youtu.be/dQw4w9WgXcQ').name, 'youtube')
        self.assertIsNone(registry.match('https://www.youtube.com/channel/UC123'))
        self.assertIsNone(registry.match('https://example.com/watch?v=1'))

    def test_extract_description(self):
        text = parser.extract(WATCH_PAGE, 'https://www.youtube.com/watch?v=dQw4w9WgXcQ')
        self.assertEqual(text, 'First line\nSecond "quoted" line & more')

    def test_no_description_falls_back(self):
        self.assertIsNone(parser.extract('<html><body>Consent page</body></html>', 'https://youtu.be/x'))

    def test_registry_standardizes_description(self):
        registry = load_custom_parsers(parser_filter=['youtube'])
        text, matched = registry.extract(WATCH_PAGE, 'https://www.youtube.com/watch?v=dQw4w9WgXcQ')
        self.assertTrue(matched)
        self.assertEqual(text, 'First line Second "quoted" line & more')

    def test_no_url_rewrite(self):
        registry = load_custom_parsers(parser_filter=['youtube'])
        href = 'https://www.youtube.com/watch?v=dQw4w9WgXcQ'
        self.assertEqual(registry.rewrite_url(href), href)
        self.assertEqual(registry.inject_headers({}, href), {})


if __name__ == '__main__':
    unittest.main()
