import unittest
from datetime import datetime, timezone
from unittest import mock

from export_tenant_works import AttributeBag, TemporalPolicyResolver
from fake_repository import FakeRepository

NOW: datetime = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class TestTemporalPolicyAbsence(unittest.TestCase):
    """
    Checks when a policy collapses to "absent".
    """

    def setUp(self) -> None:
        self.resolver = TemporalPolicyResolver()

    def test_absent_when_nothing_is_set_anywhere(self) -> None:
        """
        Checks that a resource with no association and no flattened fields has no policy.
        """
        resource = AttributeBag({'id': 'w1', 'visibility': 'open'})
        computed = self.resolver.resolve(resource, 'embargo', now=NOW)
        self.assertEqual(computed, (None, None))

    def test_absent_when_association_and_resource_are_both_blank(self) -> None:
        """
        Checks that blank strings, empty lists, and nulls on both sources still mean "no policy".
        """
        resource = AttributeBag(
            {
                'id': 'w1',
                'visibility': 'open',
                'embargo_release_date': '',
                'embargo_history': [],
                'embargo': {'id': 'e1', 'visibility_during_embargo': '  ', 'visibility_after_embargo': None},
            }
        )
        policy, err = self.resolver.resolve(resource, 'embargo', now=NOW)
        self.assertIsNone(policy)
        self.assertIsNone(err)

    def test_malformed_date_alone_counts_as_blank(self) -> None:
        """
        Checks that an unparseable boundary is dropped rather than raising, leaving the policy absent.
        """
        resource = AttributeBag({'id': 'w1', 'visibility': 'open', 'lease_expiration_date': 'not-a-date'})
        policy, err = self.resolver.resolve(resource, 'lease', now=NOW)
        self.assertIsNone(policy)
        self.assertIsNone(err)

    def test_history_alone_is_enough_to_emit_a_policy(self) -> None:
        """
        Checks that a released embargo (history only) is still emitted, and is not active.
        """
        resource = AttributeBag({'id': 'w1', 'visibility': 'open', 'embargo_history': 'released 2020-01-01'})
        policy, _ = self.resolver.resolve(resource, 'embargo', now=NOW)
        assert policy is not None
        self.assertEqual(policy['history'], ['released 2020-01-01'])
        self.assertIsNone(policy['boundary_timestamp'])
        self.assertFalse(policy['active'])


class TestTemporalPolicyActive(unittest.TestCase):
    """
    Checks the `active` and `currently_applied_visibility` computation.
    """

    def setUp(self) -> None:
        self.resolver = TemporalPolicyResolver()

    def make_resource(self, boundary: str, visibility: str = 'restricted', during: str = 'restricted') -> AttributeBag:
        return AttributeBag(
            {
                'id': 'w1',
                'visibility': visibility,
                'embargo_release_date': boundary,
                'visibility_during_embargo': during,
                'visibility_after_embargo': 'open',
            }
        )

    def test_future_boundary_with_matching_visibility_is_active(self) -> None:
        policy, _ = self.resolver.resolve(self.make_resource('2030-01-01T00:00:00Z'), 'embargo', now=NOW)
        assert policy is not None
        self.assertTrue(policy['active'])
        self.assertTrue(policy['currently_applied_visibility'])
        self.assertEqual(policy['kind'], 'Embargo')

    def test_boundary_equal_to_now_is_not_active(self) -> None:
        """
        Checks that the boundary comparison is strict.
        """
        policy, _ = self.resolver.resolve(self.make_resource('2026-01-01T12:00:00Z'), 'embargo', now=NOW)
        assert policy is not None
        self.assertFalse(policy['active'])
        self.assertTrue(policy['currently_applied_visibility'])

    def test_past_boundary_is_not_active(self) -> None:
        policy, _ = self.resolver.resolve(self.make_resource('2020-01-01'), 'embargo', now=NOW)
        assert policy is not None
        self.assertFalse(policy['active'])

    def test_visibility_mismatch_is_not_active(self) -> None:
        policy, _ = self.resolver.resolve(
            self.make_resource('2030-01-01T00:00:00Z', visibility='open'), 'embargo', now=NOW
        )
        assert policy is not None
        self.assertFalse(policy['active'])
        self.assertFalse(policy['currently_applied_visibility'])

    def test_visibility_comparison_is_case_sensitive(self) -> None:
        policy, _ = self.resolver.resolve(
            self.make_resource('2030-01-01T00:00:00Z', during='Restricted'), 'embargo', now=NOW
        )
        assert policy is not None
        self.assertFalse(policy['active'])

    def test_timestamps_are_normalized_to_utc(self) -> None:
        """
        Checks that offsets are converted to UTC and that bare dates are taken as UTC midnight.
        """
        with_offset, _ = self.resolver.resolve(self.make_resource('2030-06-01T12:00:00-05:00'), 'embargo', now=NOW)
        bare_date, _ = self.resolver.resolve(self.make_resource('2030-06-01'), 'embargo', now=NOW)
        assert with_offset is not None and bare_date is not None
        self.assertEqual(with_offset['boundary_timestamp'], '2030-06-01T17:00:00Z')
        self.assertEqual(bare_date['boundary_timestamp'], '2030-06-01T00:00:00Z')

    def test_lease_uses_lease_fields(self) -> None:
        resource = AttributeBag(
            {
                'id': 'f1',
                'visibility': 'open',
                'lease_expiration_date': ['2030-01-01T00:00:00Z'],
                'visibility_during_lease': ['open'],
                'visibility_after_lease': ['restricted'],
                'lease_id': 'l9',
            }
        )
        policy, _ = self.resolver.resolve(resource, 'lease', now=NOW)
        expected: dict[str, object] = {
            'id': 'l9',
            'kind': 'Lease',
            'boundary_timestamp': '2030-01-01T00:00:00Z',
            'visibility_during': 'open',
            'visibility_after': 'restricted',
            'history': [],
            'active': True,
            'currently_applied_visibility': True,
        }
        self.assertEqual(policy, expected)


class TestTemporalPolicySources(unittest.TestCase):
    """
    Checks how the association and the resource's own fields are combined.
    """

    def setUp(self) -> None:
        patcher = mock.patch('export_tenant_works._sleep')
        patcher.start()
        self.addCleanup(patcher.stop)
        self.repo = FakeRepository()
        self.resolver = TemporalPolicyResolver(self.repo.api())

    def test_each_sub_field_falls_back_independently(self) -> None:
        """
        Checks that the association wins where it has a value, and the resource fills the rest.
        """
        resource = AttributeBag(
            {
                'id': 'w1',
                'visibility': 'restricted',
                'embargo_release_date': '2001-01-01',
                'visibility_during_embargo': 'restricted',
                'visibility_after_embargo': 'authenticated',
                'embargo': {'id': 'e1', 'embargo_release_date': '2030-01-01T00:00:00Z', 'visibility_after_embargo': 'open'},
            }
        )
        policy, _ = self.resolver.resolve(resource, 'embargo', now=NOW)
        assert policy is not None
        self.assertEqual(policy['id'], 'e1')
        self.assertEqual(policy['boundary_timestamp'], '2030-01-01T00:00:00Z')
        self.assertEqual(policy['visibility_during'], 'restricted')
        self.assertEqual(policy['visibility_after'], 'open')
        self.assertTrue(policy['active'])

    def test_malformed_association_date_falls_back_to_resource(self) -> None:
        resource = AttributeBag(
            {
                'id': 'w1',
                'visibility': 'restricted',
                'embargo_release_date': '2030-01-01',
                'embargo': {'id': 'e1', 'embargo_release_date': '31/12/2030', 'visibility_during_embargo': 'restricted'},
            }
        )
        policy, _ = self.resolver.resolve(resource, 'embargo', now=NOW)
        assert policy is not None
        self.assertEqual(policy['boundary_timestamp'], '2030-01-01T00:00:00Z')

    def test_association_is_fetched_by_reference(self) -> None:
        self.repo.add_object(
            'embargoes',
            {
                'id': 'e7',
                'embargo_release_date': '2030-01-01T00:00:00Z',
                'visibility_during_embargo': 'restricted',
                'visibility_after_embargo': 'open',
                'embargo_history': ['set by admin'],
            },
        )
        resource = AttributeBag({'id': 'w1', 'visibility': 'restricted', 'embargo_id': 'e7'})
        policy, err = self.resolver.resolve(resource, 'embargo', now=NOW)
        self.assertIsNone(err)
        assert policy is not None
        self.assertEqual(policy['id'], 'e7')
        self.assertEqual(policy['history'], ['set by admin'])
        self.assertTrue(policy['active'])

    def test_failed_association_fetch_degrades_to_no_policy(self) -> None:
        """
        Checks that a missing association gives (None, message) and logs, instead of raising.
        """
        resource = AttributeBag(
            {'id': 'w1', 'visibility': 'restricted', 'embargo_id': 'missing', 'embargo_release_date': '2030-01-01'}
        )
        with self.assertLogs('export_tenant_works', level='WARNING'):
            policy, err = self.resolver.resolve(resource, 'embargo', now=NOW)
        self.assertIsNone(policy)
        assert err is not None
        self.assertIn('missing', err)


if __name__ == '__main__':
    unittest.main()
