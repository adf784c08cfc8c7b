from aiogram.fsm.state import StatesGroup, State


class ProductPhoto(StatesGroup):
    # waiting for a photo for the product id stored in FSM data
    wait_photo = State()
