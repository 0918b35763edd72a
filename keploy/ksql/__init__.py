"""Database driver wrapper that records SQL calls and replays them from mocks."""