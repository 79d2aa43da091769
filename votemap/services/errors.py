class VoteDomainError(Exception):
    """Base for outcomes reported back to the caller instead of crashing the request."""

    code = "VOTE_ERROR"


class InvalidIdentityError(VoteDomainError):
    code = "INVALID_IDENTITY"


class InvalidOptionError(VoteDomainError):
    code = "INVALID_OPTION"


class DuplicateVoteError(VoteDomainError):
    code = "DUPLICATE_VOTE"


class MissingProfileError(VoteDomainError):
    code = "MISSING_PROFILE"


class SchoolNotFoundError(VoteDomainError):
    code = "SCHOOL_NOT_FOUND"


class TopicNotFoundError(VoteDomainError):
    code = "TOPIC_NOT_FOUND"


class TopicOptionsIncompleteError(VoteDomainError):
    code = "TOPIC_OPTIONS_INCOMPLETE"


class AuthRequiredError(VoteDomainError):
    code = "AUTH_REQUIRED"
