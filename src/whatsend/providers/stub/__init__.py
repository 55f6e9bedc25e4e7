from whatsend.providers.stub.client import StubSessionHandle, StubWhatsAppCapability

__all__ = ["StubSessionHandle", "StubWhatsAppCapability"]
