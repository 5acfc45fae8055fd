import dramatiq
from dramatiq.brokers.stub import StubBroker

# Builds share this process's record store, so messages never leave the process.
broker = StubBroker()
dramatiq.set_broker(broker)
