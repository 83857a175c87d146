from deskpilot.input.injector import InputInjector as InputInjector
from deskpilot.input.segmenter import segment as segment
from deskpilot.input.strategies import (
    CharacterStrategy as CharacterStrategy,
    ClipboardPasteStrategy as ClipboardPasteStrategy,
    SegmentedStrategy as SegmentedStrategy,
    default_chain as default_chain,
)
