"""
Exceptions raised by asv_tools.

Only the failures this package detects itself get their own type. Errors from
DADA2, scikit-bio, statsmodels and friends propagate unchanged.
"""


class AsvToolsError(Exception):
    """Base class for errors raised by asv_tools."""


class ConfigError(AsvToolsError, ValueError):
    """Invalid or unknown configuration entry."""


class ExternalToolError(AsvToolsError):
    """An external command line tool failed or could not be found."""

    def __init__(self, command, message):
        self.command = list(command)
        super().__init__(f"{message}: {' '.join(str(c) for c in self.command)}")


class IdentifierCollisionError(AsvToolsError):
    """Two distinct sequences hashed to the same feature identifier."""

    def __init__(self, feature_id, sequences):
        self.feature_id = feature_id
        self.sequences = tuple(sequences)
        super().__init__(
            f"Feature identifier {feature_id} is shared by {len(self.sequences)} "
            f"distinct sequences: {', '.join(self.sequences)}"
        )


class DatasetIntegrityError(AsvToolsError):
    """
    The components of a dataset do not share the same identifiers.

    Attributes:
    -----------
    problems : dict
        Maps a component name ('taxonomy', 'tree', 'metadata', 'sequences')
        to a dict of problem kind ('missing', 'unexpected', 'duplicated',
        'mismatched') -> sorted list of identifiers.
    """

    def __init__(self, problems):
        self.problems = problems
        lines = []
        for component, kinds in problems.items():
            for kind, ids in kinds.items():
                lines.append(f"{component}: {len(ids)} {kind} identifier(s): {', '.join(map(str, ids))}")
        super().__init__("Dataset assembly failed:\n  " + "\n  ".join(lines))
