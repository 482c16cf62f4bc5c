import sys
import os
import unittest
import yaml
# Add src to path
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '../src')))

from detection.rule_model import FieldMapSelection, KeywordSelection
from detection.rule_parser import parse, parse_or_raise
from utils.errors import RuleValidationError

SSH_RULE = """
title: Failed SSH Login
id: 11111111-2222-3333-4444-555555555555
status: experimental
description: Failed password attempts
author: test
date: 2025-01-15
tags:
  - attack.credential-access
  - attack.t1110
logsource:
  product: linux
  service: sshd
detection:
  selection:
    message|contains: 'Failed password'
    service:
      - sshd
      - ssh-*
  keywords:
    - 'authentication failure'
  condition: selection or keywords
level: high
"""


class TestRuleParser(unittest.TestCase):
    def test_parses_complete_rule(self):
        result = parse(SSH_RULE)

        self.assertTrue(result.ok)
        rule = result.rule
        self.assertEqual(rule.title, 'Failed SSH Login')
        self.assertEqual(rule.id, '11111111-2222-3333-4444-555555555555')
        self.assertEqual(rule.level, 'high')
        self.assertEqual(rule.status, 'experimental')
        self.assertEqual(rule.date, '2025-01-15')
        self.assertEqual(rule.tags, ('attack.credential-access', 'attack.t1110'))
        self.assertEqual(rule.logsource.service, 'sshd')

        selection = rule.detection.selections['selection']
        self.assertIsInstance(selection, FieldMapSelection)
        message, service = selection.constraints
        self.assertEqual(message.field, 'message')
        self.assertEqual(message.modifier, 'contains')
        self.assertEqual(message.values, ('Failed password',))
        self.assertTrue(service.is_list)
        self.assertEqual(service.values, ('sshd', 'ssh-*'))

        keywords = rule.detection.selections['keywords']
        self.assertIsInstance(keywords, KeywordSelection)
        self.assertEqual(keywords.keywords, ('authentication failure',))
        self.assertEqual(result.warnings, [])

    def test_defaults_for_missing_optional_fields(self):
        rule = parse_or_raise("""
title: Minimal
logsource: {}
detection:
  selection:
    level: error
  condition: selection
""")
        self.assertEqual(rule.level, 'medium')
        self.assertEqual(rule.status, 'stable')
        self.assertEqual(len(rule.id), 36)
        self.assertEqual(rule.tags, ())
        self.assertTrue(rule.logsource.is_empty())

    def test_reports_every_missing_required_field(self):
        result = parse("description: nothing useful here\nlevel: extreme\n")

        self.assertFalse(result.ok)
        self.assertIsNone(result.rule)
        self.assertIn('Missing or invalid "title" field', result.errors)
        self.assertIn('Missing or invalid "logsource" field', result.errors)
        self.assertIn('Missing or invalid "detection" field', result.errors)
        self.assertTrue(any(e.startswith('Invalid "level": extreme') for e in result.errors))

    def test_missing_condition(self):
        result = parse("""
title: No condition
logsource: {}
detection:
  selection:
    level: error
""")
        self.assertEqual(result.errors, ['Missing "detection.condition" field'])

    def test_invalid_yaml(self):
        result = parse("title: [unclosed")
        self.assertEqual(len(result.errors), 1)
        self.assertTrue(result.errors[0].startswith('YAML parsing failed'))

    def test_non_mapping_document(self):
        result = parse("- just\n- a list\n")
        self.assertEqual(result.errors, ['YAML parsing failed: Invalid YAML: expected object'])

    def test_nested_selection_values_are_rejected(self):
        result = parse("""
title: Nested
logsource: {}
detection:
  selection:
    user:
      name: root
  condition: selection
""")
        self.assertFalse(result.ok)
        self.assertIn('selection.user', result.errors[0])

    def test_list_condition_is_joined_with_or(self):
        rule = parse_or_raise("""
title: Two conditions
logsource: {}
detection:
  a:
    level: error
  b:
    level: critical
  condition:
    - a
    - b
""")
        self.assertEqual(rule.detection.condition, '(a) or (b)')

    def test_scalar_selection_becomes_keyword(self):
        rule = parse_or_raise("""
title: Scalar
logsource: {}
detection:
  kw: mimikatz
  condition: kw
""")
        self.assertEqual(rule.detection.selections['kw'], KeywordSelection(keywords=('mimikatz',)))

    def test_warnings_do_not_block_parsing(self):
        result = parse("""
title: Suspicious
logsource: {}
detection:
  selection:
    CommandLine|endswith: '.ps1'
  condition: selection and missing and 1 of filter_*
""")
        self.assertTrue(result.ok)
        self.assertEqual(len(result.warnings), 3)
        self.assertTrue(any('endswith' in w for w in result.warnings))
        self.assertTrue(any('"missing"' in w for w in result.warnings))
        self.assertTrue(any('filter_*' in w for w in result.warnings))

    def test_invalid_condition_is_a_warning(self):
        result = parse("""
title: Broken condition
logsource: {}
detection:
  selection:
    level: error
  condition: selection and
""")
        self.assertTrue(result.ok)
        self.assertTrue(result.warnings[0].startswith('Invalid condition'))

    def test_parse_or_raise_carries_errors(self):
        with self.assertRaises(RuleValidationError) as ctx:
            parse_or_raise("title: only a title\n")
        self.assertIn('Missing or invalid "detection" field', ctx.exception.errors)

    def test_yaml_round_trip_keeps_meaning(self):
        rule = parse_or_raise(SSH_RULE)
        dumped = rule.to_yaml()

        self.assertEqual(parse_or_raise(dumped), rule)
        self.assertEqual(list(yaml.safe_load(dumped).keys())[:3], ['title', 'id', 'status'])


if __name__ == '__main__':
    unittest.main()
