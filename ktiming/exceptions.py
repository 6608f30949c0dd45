"""Custom exceptions for ktiming."""


class KTimingError(Exception):
    """Base exception for ktiming."""
    pass


class TagSyntaxError(KTimingError):
    """Malformed karaoke tag input."""
    pass


class AudioDecodeError(KTimingError):
    """Audio source could not be read or decoded to PCM."""
    pass


class FeatureExtractionError(KTimingError):
    """Waveform or spectrogram computation failed."""
    pass
