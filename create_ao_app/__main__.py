from create_ao_app.cli import main

main()
