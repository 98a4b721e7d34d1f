"""Payment-provider webhook bodies (M-Pesa Daraja, Jenga, KCB Buni)."""
from decimal import Decimal
from typing import Any, Optional, List

from pydantic import BaseModel, Field

from app.schemas.base import ProviderPayload


# ==================== M-Pesa STK callback ====================

class CallbackItem(ProviderPayload):
    name: str = Field(..., alias="Name")
    value: Any = Field(None, alias="Value")


class CallbackMetadata(ProviderPayload):
    items: List[CallbackItem] = Field(default_factory=list, alias="Item")


class StkCallback(ProviderPayload):
    """Body.stkCallback of a Daraja STK result notification."""
    merchant_request_id: Optional[str] = Field(None, alias="MerchantRequestID")
    checkout_request_id: str = Field(..., alias="CheckoutRequestID")
    result_code: int = Field(..., alias="ResultCode")
    result_desc: Optional[str] = Field(None, alias="ResultDesc")
    callback_metadata: Optional[CallbackMetadata] = Field(None, alias="CallbackMetadata")

    def metadata_value(self, name: str) -> Any:
        if self.callback_metadata is None:
            return None
        for item in self.callback_metadata.items:
            if item.name == name:
                return item.value
        return None

    @property
    def receipt_number(self) -> Optional[str]:
        value = self.metadata_value("MpesaReceiptNumber")
        return str(value) if value is not None else None

    @property
    def amount(self) -> Any:
        return self.metadata_value("Amount")

    @property
    def phone_number(self) -> Optional[str]:
        value = self.metadata_value("PhoneNumber")
        return str(value) if value is not None else None

    @property
    def transaction_date(self) -> Optional[str]:
        value = self.metadata_value("TransactionDate")
        return str(value) if value is not None else None


class StkCallbackBody(ProviderPayload):
    stk_callback: StkCallback = Field(..., alias="stkCallback")


class StkCallbackEnvelope(ProviderPayload):
    body: StkCallbackBody = Field(..., alias="Body")


# ==================== Jenga IPN ====================

class JengaCustomer(ProviderPayload):
    name: Optional[str] = None
    mobile_number: Optional[str] = Field(None, alias="mobileNumber")
    reference: Optional[str] = None


class JengaTransaction(ProviderPayload):
    date: Optional[str] = None
    reference: str
    payment_mode: Optional[str] = Field(None, alias="paymentMode")
    amount: Decimal
    bill_number: Optional[str] = Field(None, alias="billNumber")
    status: Optional[str] = None
    remarks: Optional[str] = None


class JengaBank(ProviderPayload):
    reference: Optional[str] = None
    transaction_type: Optional[str] = Field(None, alias="transactionType")
    account: Optional[str] = None


class JengaIpnPayload(ProviderPayload):
    callback_type: str = Field(..., alias="callbackType")
    customer: Optional[JengaCustomer] = None
    transaction: JengaTransaction
    bank: Optional[JengaBank] = None


# ==================== KCB IPN ====================

class KcbC2BPayload(ProviderPayload):
    """Daraja C2B confirmation forwarded by KCB Buni."""
    trans_id: str = Field(..., alias="TransID")
    trans_amount: Decimal = Field(..., alias="TransAmount")
    trans_time: Optional[str] = Field(None, alias="TransTime")
    msisdn: Optional[str] = Field(None, alias="MSISDN")
    bill_ref_number: Optional[str] = Field(None, alias="BillRefNumber")
    first_name: Optional[str] = Field(None, alias="FirstName")
    last_name: Optional[str] = Field(None, alias="LastName")


class KcbGenericPayload(ProviderPayload):
    """KCB bank notification in its own JSON shape."""
    transaction_reference: str = Field(..., alias="transactionReference")
    amount: Decimal
    bill_number: Optional[str] = Field(None, alias="billNumber")
    mobile_number: Optional[str] = Field(None, alias="mobileNumber")
    customer_name: Optional[str] = Field(None, alias="customerName")
    status: Optional[str] = None
    date: Optional[str] = None
    message: Optional[str] = None


class WebhookAck(BaseModel):
    """Acknowledgement returned to the provider."""
    success: bool = True
    message: str = "Accepted"
    payment_id: Optional[str] = None
    duplicate: bool = False
