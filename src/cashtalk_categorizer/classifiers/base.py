from abc import ABC, abstractmethod

from cashtalk_categorizer.models import CategoryGuess


class Classifier(ABC):
    @abstractmethod
    def classify(self, text: str) -> CategoryGuess | None:
        """Attempt to categorize a transaction description."""
        pass
