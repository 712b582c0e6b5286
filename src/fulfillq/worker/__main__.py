from fulfillq.worker.main import run

run()
