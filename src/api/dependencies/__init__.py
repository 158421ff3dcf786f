from fastapi import Request

from services.custody_ledger import CustodyLedger


def get_ledger(request: Request) -> CustodyLedger:
    ledger: CustodyLedger = request.app.state.ledger
    return ledger
