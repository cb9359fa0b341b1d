from .gateway import InMemoryGateway, StateFileGateway, StorageGateway
