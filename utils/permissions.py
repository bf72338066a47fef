"""
Role capabilities for the challenge workflow.

Ownership (being the challenge creator) is checked by the services; this
table only answers what a role may do regardless of ownership.
"""

ROLES = ('student', 'teacher', 'ngo', 'institution', 'admin', 'other')
DEFAULT_ROLE = 'other'

CREATE_CHALLENGE = 'create_challenge'
END_ANY_CHALLENGE = 'end_any_challenge'
VIEW_ALL_SUBMISSIONS = 'view_all_submissions'
VERIFY_ANY_SUBMISSION = 'verify_any_submission'

CAPABILITIES = {
    CREATE_CHALLENGE: frozenset({'teacher', 'admin', 'ngo', 'institution'}),
    END_ANY_CHALLENGE: frozenset({'admin'}),
    VIEW_ALL_SUBMISSIONS: frozenset({'admin', 'ngo'}),
    VERIFY_ANY_SUBMISSION: frozenset({'admin', 'ngo'}),
}


def normalize_role(role):
    if role in ROLES:
        return role
    return DEFAULT_ROLE


def has_capability(role, action):
    """
    True if ``role`` may perform ``action``. Unknown actions are denied.
    """
    return normalize_role(role) in CAPABILITIES.get(action, frozenset())
