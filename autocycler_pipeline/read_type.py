from enum import Enum


class ReadType(str, Enum):
    """
    Long-read sequencing technology, named the way Autocycler's --read_type expects.
    """

    ONT_R9 = "ont_r9"
    ONT_R10 = "ont_r10"
    PACBIO_CLR = "pacbio_clr"
    PACBIO_HIFI = "pacbio_hifi"

    @property
    def is_pacbio(self) -> bool:
        return self in (ReadType.PACBIO_CLR, ReadType.PACBIO_HIFI)

    @property
    def minimap2_preset(self) -> str:
        """Preset passed to minimap2 -x when mapping reads back to the consensus."""
        return "map-pb" if self.is_pacbio else "map-ont"
