# =============================================================================
#  Babelcord
#  Copyright (C) 2025 github.com/Copycord
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

"""Failure taxonomy shared by the relay pipeline."""


class BabelcordError(Exception):
    pass


class ValidationError(BabelcordError):
    """Bad input. Raised before any network attempt and never retried."""


class TranslationError(BabelcordError):
    """Both translation paths failed for one (text, target) pair."""


class TranslationProviderError(TranslationError):
    """The translation back end answered with an error or an unusable result."""


class TranslationTimeoutError(TranslationError):
    """A translation request exceeded its hard timeout."""


class ResourceUnavailableError(BabelcordError):
    """Emoji slots full or missing permission. Always degraded, never retried."""


class DeliveryError(BabelcordError):
    """Sending to a destination channel failed."""


class StorageError(BabelcordError):
    """The sync-group configuration file could not be read or written."""
