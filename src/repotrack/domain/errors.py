from __future__ import annotations


class ReparseError(ValueError):
    """Validation failure raised before any queue write or executor call."""

    code = 'reparse_error'

    def __init__(self, message: str, *, field: str | None = None, code: str | None = None):
        super().__init__(message)
        self.message = message
        self.field = field
        if code:
            self.code = code


class MissingTargetError(ReparseError):
    code = 'missing_target'

    def __init__(self):
        super().__init__('Specify a commit or repository to reparse.', field='commits')


class ConflictingTargetError(ReparseError):
    code = 'conflicting_target'

    def __init__(self):
        super().__init__('Specify either explicit commits or a repository, not both.', field='repository')


class MinDateRequiresRepositoryError(ReparseError):
    code = 'min_date_requires_repository'

    def __init__(self):
        super().__init__('A minimum date can only be used when reparsing a whole repository.', field='min_date')


class NoOperationsRequestedError(ReparseError):
    code = 'no_operations_requested'

    def __init__(self):
        super().__init__(
            'Specify what information to reparse with message, change, herald, and/or owners.',
            field='operations',
        )


class ConfirmationRequiredError(ReparseError):
    code = 'confirmation_required'

    def __init__(self):
        super().__init__(
            'Reparsing owners may delete existing package relationships; confirm or force to continue.',
            field='confirm_destructive',
        )


class MalformedCommitReferenceError(ReparseError):
    code = 'malformed_commit_reference'

    def __init__(self, reference: str):
        super().__init__(f"Can't parse commit identifier '{reference}'.", field='commits')
        self.reference = reference


class UnknownRepositoryError(ReparseError):
    code = 'unknown_repository'

    def __init__(self, identifier: str):
        super().__init__(f"Unknown repository '{identifier}'.", field='repository')
        self.identifier = identifier


class UnknownCommitError(ReparseError):
    code = 'unknown_commit'

    def __init__(self, callsign: str, commit_identifier: str):
        super().__init__(
            f"No matching commit '{commit_identifier}' in repository '{callsign}'. "
            '(For git and mercurial repositories, you must specify the entire commit hash.)',
            field='commits',
        )
        self.callsign = callsign
        self.commit_identifier = commit_identifier


class NoCommitsFoundError(ReparseError):
    code = 'no_commits_found'

    def __init__(self, identifier: str):
        super().__init__(f"No commits have been discovered in repository '{identifier}'.", field='repository')
        self.identifier = identifier
