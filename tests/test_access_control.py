import unittest
from unittest import mock

import httpx

from export_tenant_works import AccessControlResolver
from fake_repository import FakeRepository


class TestAccessControlResolver(unittest.TestCase):
    """
    Tests fetching and flattening of access-control records.
    """

    def setUp(self) -> None:
        patcher = mock.patch('export_tenant_works._sleep')
        patcher.start()
        self.addCleanup(patcher.stop)
        self.repo = FakeRepository()
        self.resolver = AccessControlResolver(self.repo.api())

    def test_blank_id_is_absent_without_a_request(self) -> None:
        for acl_id in (None, '', '  '):
            with self.subTest(acl_id=acl_id):
                self.assertEqual(self.resolver.resolve(acl_id), (None, None))
        self.assertEqual(self.repo.requests, [])

    def test_flat_permissions(self) -> None:
        self.repo.add_object(
            'access_controls',
            {
                'id': 'acl1',
                'permissions': [
                    {'id': 'p1', 'mode': 'read', 'agent_type': 'group', 'agent_name': 'public', 'access_to': 'w1'},
                    {'id': 'p2', 'mode': 'write', 'agent_type': 'person', 'agent_name': 'jdoe@example.edu', 'access_to': 'w1'},
                ],
            },
        )
        computed, err = self.resolver.resolve('acl1')
        expected: dict[str, object] = {
            'id': 'acl1',
            'permissions': [
                {'id': 'p1', 'mode': 'Read', 'agent': {'type': 'Group', 'identifier': 'public'}, 'target_id': 'w1'},
                {
                    'id': 'p2',
                    'mode': 'Write',
                    'agent': {'type': 'Person', 'identifier': 'jdoe@example.edu'},
                    'target_id': 'w1',
                },
            ],
        }
        self.assertEqual(computed, expected)
        self.assertIsNone(err)

    def test_linked_data_permissions(self) -> None:
        """
        Checks that URI-style modes and agents are normalized, and the record's target is the default.
        """
        self.repo.add_object(
            'access_controls',
            {
                'id': 'acl2',
                'access_to': {'id': 'fs1'},
                'permissions': [
                    {
                        'id': 'p3',
                        'mode': [{'id': 'http://www.w3.org/ns/auth/acl#Read'}],
                        'agent': [{'id': 'http://projecthydra.org/ns/auth/person#jdoe@example.edu'}],
                    },
                    {
                        'id': 'p4',
                        'mode': [{'id': 'http://www.w3.org/ns/auth/acl#Write'}],
                        'agent': [{'id': 'http://projecthydra.org/ns/auth/group#admin'}],
                        'access_to': {'id': 'fs1'},
                    },
                ],
            },
        )
        computed, _ = self.resolver.resolve('acl2')
        assert computed is not None
        permissions: list = computed['permissions']  # type: ignore[assignment]
        self.assertEqual(
            permissions[0],
            {'id': 'p3', 'mode': 'Read', 'agent': {'type': 'Person', 'identifier': 'jdoe@example.edu'}, 'target_id': 'fs1'},
        )
        self.assertEqual(permissions[1]['agent'], {'type': 'Group', 'identifier': 'admin'})
        self.assertEqual(permissions[1]['mode'], 'Write')

    def test_unknown_modes_and_agents_are_skipped(self) -> None:
        self.repo.add_object(
            'access_controls',
            {
                'id': 'acl3',
                'permissions': [
                    {'id': 'p5', 'mode': 'discover', 'agent_type': 'group', 'agent_name': 'public'},
                    {'id': 'p6', 'mode': 'read', 'agent_type': 'robot', 'agent_name': 'crawler'},
                    'not-a-permission',
                    {'id': 'p7', 'mode': 'read', 'agent_type': 'group', 'agent_name': 'registered'},
                ],
            },
        )
        computed, _ = self.resolver.resolve('acl3')
        assert computed is not None
        self.assertEqual([p['id'] for p in computed['permissions']], ['p7'])  # type: ignore[union-attr]

    def test_missing_record_degrades_to_absent(self) -> None:
        with self.assertLogs('export_tenant_works', level='WARNING'):
            computed, err = self.resolver.resolve('nope')
        self.assertIsNone(computed)
        assert err is not None
        self.assertIn('nope', err)

    def test_server_errors_degrade_to_absent_after_retries(self) -> None:
        """
        Checks that a persistently failing store is retried, then reported, never raised.
        """
        repo = FakeRepository()
        repo.handler = lambda request: httpx.Response(503)  # type: ignore[method-assign]
        resolver = AccessControlResolver(repo.api())
        with self.assertLogs('export_tenant_works', level='WARNING'):
            computed, err = resolver.resolve('acl1')
        self.assertIsNone(computed)
        self.assertIsNotNone(err)


if __name__ == '__main__':
    unittest.main()
