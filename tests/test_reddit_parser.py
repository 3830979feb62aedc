
import json
import unittest
import sys
import os

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

import custom_parsers.reddit as parser
from site_strategies import load_custom_parsers

THREAD_URL = 'https://www.reddit.com/r/python/comments/abc123/some_thread/'

THREAD_JSON = json.dumps([
    {"kind": "Listing", "data": {"children": [
        {"kind": "t3", "data": {"title": "Some thread", "selftext": "Post text"}},
    ]}},
    {"kind": "Listing", "data": {"children": [
        {"kind": "t1", "data": {"body": "First   comment", "replies": {"kind": "Listing", "data": {"children": [
            {"kind": "t1", "data": {"body": "Nested reply", "replies": ""}},
            {"kind": "t1", "data": {"body": "[deleted]", "replies": ""}},
        ]}}}},
        {"kind": "t1", "data": {"body": "[removed]", "replies": ""}},
        {"kind": "t1", "data": {"body": "Last comment", "replies": ""}},
    ]}},
])


class TestRedditParser(unittest.TestCase):

    def test_pattern(self):
        registry = load_custom_parsers(parser_filter=['reddit'])
        self.assertEqual(registry.match(THREAD_URL).name, 'reddit')
        self.assertEqual(registry.match('https://old.reddit.com/r/python/comments/abc123/').name, 'reddit')
        self.assertIsNone(registry.match('https://www.reddit.com/r/python/'))
        self.assertIsNone(registry.match('http://www.reddit.com/r/python/comments/abc123/'))

    def test_rewrite_url(self):
        self.assertEqual(parser.rewrite_url(THREAD_URL), 'https://www.reddit.com/r/python/comments/abc123/some_thread/.json')
        self.assertEqual(
            parser.rewrite_url('https://www.reddit.com/r/python/comments/abc123/t?sort=new#c1'),
            'https://www.reddit.com/r/python/comments/abc123/t/.json?sort=new',
        )

    def test_inject_headers(self):
        headers = {}
        parser.inject_headers(headers, THREAD_URL)
        self.assertEqual(headers['Cookie'], 'reddit_session=guest')

        headers = {'Cookie': 'a=b'}
        parser.inject_headers(headers, THREAD_URL)
        self.assertEqual(headers['Cookie'], 'a=b; reddit_session=guest')

    def test_extract_comment_bodies(self):
        text = parser.extract(THREAD_JSON, THREAD_URL)
        self.assertEqual(text, 'First   comment Nested reply Last comment')
        self.assertNotIn('[deleted]', text)
        self.assertNotIn('[removed]', text)

    def test_extract_from_truncated_json(self):
        raw = '[{"data": {"body": "One", "ups": 1}}, {"data": {"body": "[deleted]", "ups": 0}}, {"data": {"body": "Two", "u'
        self.assertEqual(parser.extract(raw, THREAD_URL), 'One Two')

    def test_extract_never_falls_back(self):
        registry = load_custom_parsers(parser_filter=['reddit'])
        text, matched = registry.extract('<html><body>Blocked</body></html>', THREAD_URL)
        self.assertTrue(matched)
        self.assertEqual(text, '')

    def test_registry_standardizes_text(self):
        registry = load_custom_parsers(parser_filter=['reddit'])
        text, matched = registry.extract(THREAD_JSON, THREAD_URL)
        self.assertTrue(matched)
        self.assertEqual(text, 'First comment Nested reply Last comment')
        self.assertEqual(registry.version_for(THREAD_URL), parser.VERSION)


if __name__ == '__main__':
    unittest.main()
