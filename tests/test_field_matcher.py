import sys
import os
import unittest
# Add src to path
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '../src')))

from detection.field_matcher import match_selection, match_value, wildcard_match
from detection.rule_model import FieldConstraint, FieldMapSelection, KeywordSelection


def field_map(*constraints):
    return FieldMapSelection(constraints=tuple(constraints))


class TestWildcards(unittest.TestCase):
    def test_star_and_question_mark(self):
        self.assertTrue(wildcard_match('auth-service', 'auth-*'))
        self.assertTrue(wildcard_match('auth-', 'auth-*'))
        self.assertFalse(wildcard_match('api-auth', 'auth-*'))
        self.assertTrue(wildcard_match('web1', 'web?'))
        self.assertFalse(wildcard_match('web12', 'web?'))

    def test_pattern_is_anchored_and_escaped(self):
        self.assertFalse(wildcard_match('xa.b', 'a.b'))
        self.assertFalse(wildcard_match('axb', 'a.b'))
        self.assertTrue(wildcard_match('a.b', 'a.b'))
        self.assertTrue(wildcard_match('C:\\Windows\\cmd.exe', '*\\cmd.exe'))

    def test_case_sensitivity(self):
        self.assertTrue(wildcard_match('ERROR', 'error'))
        self.assertFalse(wildcard_match('ERROR', 'error', case_sensitive=True))
        self.assertTrue(wildcard_match('Mimikatz.exe', '*katz*'))


class TestMatchValue(unittest.TestCase):
    def test_scalar_coercion(self):
        self.assertTrue(match_value(4625, '4625'))
        self.assertTrue(match_value(True, 'true'))
        self.assertTrue(match_value(3.0, 3))
        self.assertFalse(match_value(None, 'x'))
        self.assertFalse(match_value('x', None))

    def test_list_valued_field(self):
        self.assertTrue(match_value(['a', 'admin'], 'adm*'))
        self.assertFalse(match_value(['a', 'b'], 'c'))

    def test_contains_modifier(self):
        self.assertTrue(match_value('Failed password for root', 'failed PASSWORD', modifier='contains'))
        self.assertFalse(match_value('Failed password', 'failed', case_sensitive=True, modifier='contains'))

    def test_unsupported_modifier_never_matches(self):
        self.assertFalse(match_value('script.ps1', '.ps1', modifier='endswith'))
        self.assertFalse(match_value('abc', 'abc', modifier='re'))


class TestMatchSelection(unittest.TestCase):
    def setUp(self):
        self.record = {
            'service': 'auth-service',
            'level': 'error',
            'message': 'Failed password for invalid user admin',
            'metadata.src_ip': '10.0.0.5',
            'src_ip': '10.0.0.5',
            'port': 22,
        }

    def test_all_fields_must_match(self):
        selection = field_map(
            FieldConstraint('service', ('auth-*',)),
            FieldConstraint('level', ('warn', 'error'), is_list=True),
        )
        self.assertTrue(match_selection(self.record, selection))

        selection = field_map(
            FieldConstraint('service', ('auth-*',)),
            FieldConstraint('level', ('critical',)),
        )
        self.assertFalse(match_selection(self.record, selection))

    def test_missing_field_fails_constraint(self):
        selection = field_map(FieldConstraint('user', ('admin',)))
        self.assertFalse(match_selection(self.record, selection))

    def test_numeric_field(self):
        self.assertTrue(match_selection(self.record, field_map(FieldConstraint('port', (22,)))))
        self.assertTrue(match_selection(self.record, field_map(FieldConstraint('port', ('22',)))))

    def test_empty_field_map_never_matches(self):
        self.assertFalse(match_selection(self.record, field_map()))

    def test_keywords_search_every_text_field(self):
        self.assertTrue(match_selection(self.record, KeywordSelection(keywords=('INVALID USER',))))
        self.assertTrue(match_selection(self.record, KeywordSelection(keywords=('nope', '10.0.0'))))
        self.assertFalse(match_selection(self.record, KeywordSelection(keywords=('mimikatz',))))
        # Keywords only look at string values.
        self.assertFalse(match_selection(self.record, KeywordSelection(keywords=('22',))))

    def test_empty_keywords_are_ignored(self):
        self.assertFalse(match_selection(self.record, KeywordSelection(keywords=('',))))

    def test_case_sensitive_keywords(self):
        selection = KeywordSelection(keywords=('invalid USER',))
        self.assertFalse(match_selection(self.record, selection, case_sensitive=True))


if __name__ == '__main__':
    unittest.main()
