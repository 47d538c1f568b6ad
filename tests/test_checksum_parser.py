import unittest

from export_tenant_works import ChecksumParser


class Unprintable:
    def __str__(self) -> str:
        raise RuntimeError('cannot render')


class TestChecksumParser(unittest.TestCase):
    """
    Tests the ChecksumParser against the digest dialects seen in file metadata.
    """

    def setUp(self) -> None:
        self.parser = ChecksumParser()

    def test_urn_form(self) -> None:
        computed, err = self.parser.parse('urn:sha1:abc123')
        expected: dict[str, str] = {'original': 'urn:sha1:abc123', 'algorithm': 'sha1', 'value': 'abc123'}
        self.assertEqual(computed, expected)
        self.assertIsNone(err)

    def test_bare_form(self) -> None:
        computed, _ = self.parser.parse('sha1:abc123')
        expected: dict[str, str] = {'original': 'sha1:abc123', 'algorithm': 'sha1', 'value': 'abc123'}
        self.assertEqual(computed, expected)

    def test_only_first_digest_of_a_list_is_used(self) -> None:
        computed, _ = self.parser.parse(['urn:md5:ffff', 'urn:sha1:abc123'])
        self.assertEqual(computed['algorithm'], 'md5')
        self.assertEqual(computed['value'], 'ffff')

    def test_blank_and_missing_digests_give_empty_result(self) -> None:
        """
        Checks that '', None, and [] give an empty result without an error.
        """
        for digest in ('', None, [], '   '):
            with self.subTest(digest=digest):
                self.assertEqual(self.parser.parse(digest), ({}, None))

    def test_unresolved_parts_are_omitted(self) -> None:
        """
        Checks that a digest without a separator, or a `urn:` prefix with too few parts, keeps only `original`.
        """
        self.assertEqual(self.parser.parse('abc123')[0], {'original': 'abc123'})
        self.assertEqual(self.parser.parse('urn:sha1')[0], {'original': 'urn:sha1'})
        self.assertEqual(self.parser.parse('sha1:')[0], {'original': 'sha1:', 'algorithm': 'sha1'})

    def test_parse_failure_is_logged_not_raised(self) -> None:
        with self.assertLogs('export_tenant_works', level='WARNING'):
            computed, err = self.parser.parse(Unprintable())
        self.assertEqual(computed, {})
        self.assertIsNotNone(err)


if __name__ == '__main__':
    unittest.main()
