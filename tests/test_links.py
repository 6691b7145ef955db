"""
Tests for application links
"""

from datetime import timedelta
from unittest.mock import patch

import pytest

from microloans.dates import utc_now
from microloans.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from microloans.links import LinkStatus
from microloans.rbac import ALL_PERMISSIONS, permissions_for_role


class TestCreateLink:
    def test_default_validity(self, link_manager):
        now = utc_now()
        link = link_manager.create_link("officer-1", ALL_PERMISSIONS, now=now)
        assert link.expires_at == now + timedelta(hours=24)
        assert link.status == LinkStatus.UNUSED
        assert len(link.token) >= 32

    def test_fractional_hours(self, link_manager):
        now = utc_now()
        link = link_manager.create_link("officer-1", ALL_PERMISSIONS, hours_valid=0.25, now=now)
        assert link.expires_at == now + timedelta(minutes=15)

    def test_non_positive_hours(self, link_manager):
        with pytest.raises(ValidationError):
            link_manager.create_link("officer-1", ALL_PERMISSIONS, hours_valid=0)

    def test_requires_permission(self, link_manager):
        with pytest.raises(ForbiddenError):
            link_manager.create_link("viewer-1", permissions_for_role("viewer"))


class TestValidateAndUse:
    def test_valid_token(self, link_manager):
        link = link_manager.create_link("officer-1", ALL_PERMISSIONS)
        assert link_manager.validate_token(link.token).id == link.id

    def test_unknown_token(self, link_manager):
        with pytest.raises(NotFoundError):
            link_manager.validate_token("nope")

    def test_expired_token(self, link_manager):
        link = link_manager.create_link("officer-1", ALL_PERMISSIONS, hours_valid=1,
                                        now=utc_now() - timedelta(hours=2))
        with pytest.raises(ValidationError, match="expired"):
            link_manager.validate_token(link.token)

    def test_single_use(self, link_manager):
        link = link_manager.create_link("officer-1", ALL_PERMISSIONS)
        used = link_manager.mark_link_used(link.id, "loan-1", "10.0.0.1", "pytest")
        assert used.status == LinkStatus.USED
        assert used.loan_id == "loan-1"

        with pytest.raises(ValidationError, match="already been used"):
            link_manager.validate_token(link.token)
        with pytest.raises(ValidationError):
            link_manager.mark_link_used(link.id, "loan-2")

    def test_concurrent_use_conflicts(self, link_manager):
        link = link_manager.create_link("officer-1", ALL_PERMISSIONS)
        stale = link_manager.get_link(link.id)
        link_manager.mark_link_used(link.id, "loan-1")

        with patch.object(link_manager, "get_link", return_value=stale):
            with pytest.raises(ConflictError):
                link_manager.mark_link_used(link.id, "loan-2")


class TestExpiryAndCleanup:
    def test_expire_links(self, link_manager):
        stale = link_manager.create_link("officer-1", ALL_PERMISSIONS, hours_valid=1,
                                         now=utc_now() - timedelta(hours=3))
        fresh = link_manager.create_link("officer-1", ALL_PERMISSIONS)

        expired = link_manager.expire_links()
        assert [link.id for link in expired] == [stale.id]
        assert link_manager.get_link(fresh.id).status == LinkStatus.UNUSED
        assert link_manager.expire_links() == []

    def test_cleanup_respects_retention(self, link_manager):
        old = link_manager.create_link("officer-1", ALL_PERMISSIONS, hours_valid=1,
                                       now=utc_now() - timedelta(days=40))
        recent = link_manager.create_link("officer-1", ALL_PERMISSIONS, hours_valid=1,
                                          now=utc_now() - timedelta(days=2))
        link_manager.expire_links()

        assert link_manager.cleanup_expired_links(older_than_days=30) == 1
        assert link_manager.get_link(old.id) is None
        assert link_manager.get_link(recent.id).status == LinkStatus.EXPIRED

    def test_list_by_status(self, link_manager):
        link_manager.create_link("officer-1", ALL_PERMISSIONS)
        assert len(link_manager.list_links(LinkStatus.UNUSED)) == 1
        assert link_manager.list_links(LinkStatus.USED) == []
