"""Exception types raised by the extraction pipeline and its stores."""


class MedMemError(Exception):
    """Base class for all medmem errors."""


class ExtractionParseError(MedMemError):
    """The oracle answered, but the answer could not be read as candidates."""


class OracleCallError(MedMemError):
    """The oracle could not be reached, refused the request, or timed out."""


class PersistenceError(MedMemError):
    """A single write to a store failed."""


class SchemaInitError(MedMemError):
    """A store could not create its tables. Fatal for the whole run."""
