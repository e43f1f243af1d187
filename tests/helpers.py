from fulfillment.models import LineItem
from fulfillment.notifier import ConfirmationNotifier


class RecordingNotifier(ConfirmationNotifier):
    def __init__(self, fail: bool = False) -> None:
        super().__init__()
        self.fail = fail
        self.sent: list[tuple[str, dict]] = []

    async def send(self, email: str, summary: dict) -> None:
        if self.fail:
            raise RuntimeError("mail relay down")
        self.sent.append((email, summary))


def items(*pairs) -> list[LineItem]:
    return [LineItem(product_id=pid, quantity=qty) for pid, qty in pairs]
