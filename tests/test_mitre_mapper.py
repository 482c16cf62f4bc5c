import sys
import os
import unittest
# Add src to path
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '../src')))

from detection.mitre_mapper import MitreMapper


class TestMitreMapper(unittest.TestCase):
    def setUp(self):
        self.mapper = MitreMapper()

    def test_extract_techniques(self):
        tags = ['attack.t1059.001', 'attack.T1003', 'attack.execution', 'car.2013-05-002', 'attack.t1059.001']
        self.assertEqual(self.mapper.extract_techniques(tags), ['T1059.001', 'T1003'])

    def test_extract_tactics_includes_implied(self):
        tags = ['attack.persistence', 'attack.t1059.001', 'attack.not-a-tactic']
        self.assertEqual(self.mapper.extract_tactics(tags), ['persistence', 'execution'])

    def test_empty_tags(self):
        self.assertEqual(self.mapper.extract_techniques(None), [])
        self.assertEqual(self.mapper.parse_from_tags([]), {'techniques': [], 'tactics': []})

    def test_lookups(self):
        technique = self.mapper.technique_info('T1059.001')
        self.assertEqual(technique.name, 'PowerShell')
        self.assertEqual(technique.tactic, 'execution')
        self.assertTrue(technique.is_subtechnique)
        self.assertIsNone(self.mapper.technique_info('T9999'))

        tactic = self.mapper.tactic_info('credential-access')
        self.assertEqual(tactic.id, 'TA0006')
        self.assertIsNone(self.mapper.tactic_info('nope'))

    def test_catalog(self):
        self.assertEqual(len(self.mapper.all_tactics()), 14)
        execution = self.mapper.techniques_by_tactic('execution')
        self.assertIn('T1059', [t.id for t in execution])
        self.assertTrue(all(t.tactic == 'execution' for t in execution))


if __name__ == '__main__':
    unittest.main()
