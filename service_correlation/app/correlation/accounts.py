"""
Account loading for correlation profiles.
"""

from typing import List

from .interfaces import AccountSource
from .models import Account, CorrelationProfile, Identity


class IdentityAccountSource(AccountSource):
    """
    Candidate accounts taken from the identity itself.

    A profile naming a profile class matches accounts of that class;
    otherwise accounts on the profile's application match.
    """

    def get_accounts(self, identity: Identity, profile: CorrelationProfile) -> List[Account]:
        if profile.profile_class:
            return [a for a in identity.accounts if a.profile_class == profile.profile_class]
        return [a for a in identity.accounts if a.application == profile.application]
